"""Live execution monitoring for workflow runs.

Provides a real-time terminal display of a run driven by a RunController.
"""

import asyncio
from collections import deque
from typing import Any

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from flowrun.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowrun.core.execution_state import ExecutionLog, ExecutionStatus, StoreEvent
from flowrun.core.graph_schema import WorkflowGraph
from flowrun.core.run_controller import RunController


class LiveExecutionMonitor:
    """
    Real-time terminal UI for a single run.

    Subscribes to the controller's ExecutionStore and redraws a layout with
    a header, the workflow tree, the node status table, a progress bar and
    the tail of the run log.
    """

    LOG_TAIL = 6
    REFRESH_INTERVAL = 0.25

    def __init__(self, controller: RunController, console: Console | None = None):
        self.controller = controller
        self.store = controller.store
        self.console = console or Console()
        self.graph_renderer = TerminalGraphRenderer(self.console)
        self.status_renderer = StatusTableRenderer(self.console)
        self._log_tail: deque[ExecutionLog] = deque(maxlen=self.LOG_TAIL)
        # Reuse progress widget to avoid recreating each refresh
        self._progress: Progress | None = None
        self._progress_task_id: int | None = None
        self._cancelled = False

    def create_layout(self) -> Layout:
        """Create the terminal layout"""
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main"),
            Layout(name="footer", size=self.LOG_TAIL + 5),
        )

        layout["main"].split_row(Layout(name="graph", ratio=1), Layout(name="status", ratio=1))

        return layout

    def cancel(self):
        """Stop refreshing after the next frame."""
        self._cancelled = True

    def _on_store_event(self, event: StoreEvent, payload: Any) -> None:
        if event == StoreEvent.LOG:
            self._log_tail.append(payload)
        elif event == StoreEvent.RESET:
            self._log_tail.clear()

    def _header_text(self, workflow: WorkflowGraph) -> str:
        safe_name = escape(workflow.name)
        status = self.store.status
        if status == ExecutionStatus.RUNNING:
            return f"[bold blue]⟳ Running:[/] {safe_name}"
        if status == ExecutionStatus.PAUSED:
            return f"[bold yellow]⏸ Paused:[/] {safe_name}"
        if status == ExecutionStatus.COMPLETED:
            return f"[bold green]✓ Completed:[/] {safe_name}"
        if status == ExecutionStatus.ERROR:
            return f"[bold red]✗ Failed:[/] {safe_name}"
        return f"[bold]{safe_name}[/]"

    def _log_lines(self) -> str:
        lines = []
        for entry in self._log_tail:
            color = TerminalGraphRenderer.STATUS_COLORS.get(entry.status.value, "white")
            duration = f" ({entry.duration_ms}ms)" if entry.duration_ms is not None else ""
            lines.append(
                f"[{color}]{escape(entry.node_name)}[/]: {escape(entry.message)}{duration}"
            )
        return "\n".join(lines) or "[dim]No log entries yet[/]"

    def refresh(self, layout: Layout, workflow: WorkflowGraph) -> None:
        statuses = {node_id: s.status for node_id, s in self.store.node_states.items()}

        layout["header"].update(Panel(self._header_text(workflow), style="bold"))
        layout["graph"].update(
            Panel(self.graph_renderer.render_as_tree(workflow, statuses), title="Workflow Graph")
        )
        layout["status"].update(
            Panel(self.status_renderer.render_from_store(workflow, self.store), title="Node Status")
        )

        done = sum(
            1 for s in statuses.values() if s.value in ("success", "error", "skipped")
        )
        total = len(self.controller.execution_order) or len(workflow.nodes)
        self._progress.update(
            self._progress_task_id,
            completed=done,
            total=total,
            description=f"Nodes: {done}/{total}",
        )
        layout["footer"].update(
            Panel(Group(self._progress, self._log_lines()), title="Progress")
        )

    async def monitor(self, workflow: WorkflowGraph) -> None:
        """
        Start a run and display it until it finishes.

        Stops when the run reaches a terminal status (completed, error, or
        idle after a stop) or cancel() is called.
        """
        layout = self.create_layout()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        )
        self._progress_task_id = self._progress.add_task("Nodes: 0/0", total=len(workflow.nodes))

        unsubscribe = self.store.subscribe(self._on_store_event)
        run_task = asyncio.create_task(self.controller.start())
        try:
            with Live(layout, console=self.console, refresh_per_second=4) as live:
                while not self._cancelled:
                    self.refresh(layout, workflow)
                    if run_task.done():
                        live.refresh()
                        break
                    await asyncio.sleep(self.REFRESH_INTERVAL)
        finally:
            unsubscribe()
            if not run_task.done():
                self.controller.stop()
            await run_task
