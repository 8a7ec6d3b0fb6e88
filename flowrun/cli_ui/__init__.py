"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Rendering workflow graphs as trees and topological levels
- Node status tables
- Real-time run monitoring
"""

from flowrun.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowrun.cli_ui.live_monitor import LiveExecutionMonitor

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "LiveExecutionMonitor",
]
