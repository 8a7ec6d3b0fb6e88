"""flowrun - automation graph preview engine.

Validates, schedules and simulates trigger/action/logic workflow graphs.
"""

__version__ = "0.1.0"
