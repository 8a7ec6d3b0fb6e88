"""Core modules for the flowrun engine.

Import from the submodules directly, e.g. ``flowrun.core.run_controller``.
The package itself stays empty so that ``flowrun.config`` can depend on
``flowrun.core.errors`` without loading the run controller.
"""
