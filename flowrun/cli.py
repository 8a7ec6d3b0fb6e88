"""CLI entry point for flowrun.

Commands:
- flowrun init: Write a default engine config to .flowrun/config.yaml
- flowrun validate: Check a workflow file for structural problems
- flowrun order: Show the execution order of a workflow
- flowrun visualize: Render a workflow graph in the terminal
- flowrun run: Simulate a workflow run
- flowrun check-connection: Test whether an edge could be added
- flowrun serve: Start the preview API server
- flowrun version: Show version information
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import pydantic
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from flowrun.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowrun.cli_ui.live_monitor import LiveExecutionMonitor
from flowrun.config import EngineSettings, load_settings, write_default_config
from flowrun.core.errors import ConfigError, CyclicGraphError, WorkflowLoadError
from flowrun.core.execution_state import ExecutionStatus, ExecutionStore
from flowrun.core.graph_schema import Connection, WorkflowGraph
from flowrun.core.run_controller import RunController
from flowrun.core.scheduler import execution_levels, residual_nodes, topological_order
from flowrun.core.validation import check_connection

console = Console()


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _load_workflow(workflow_file: str) -> WorkflowGraph:
    """Load a workflow file, printing errors and exiting on failure."""
    try:
        return WorkflowGraph.from_file(workflow_file)
    except WorkflowLoadError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _load_engine_settings(config_path: str | None) -> EngineSettings:
    try:
        return load_settings(Path(config_path) if config_path else None, get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {escape(str(e))}")
        sys.exit(1)


def _print_errors(errors: list[str]) -> None:
    console.print("[red]Validation errors:[/red]")
    for error in errors:
        console.print(f"  - {escape(error)}")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging level for engine diagnostics",
)
def main(log_level: str) -> None:
    """flowrun - automation graph preview engine.

    Validates, orders and simulates trigger/action/logic workflows
    without performing any real network calls.
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(force: bool) -> None:
    """Initialize engine configuration for this directory."""
    repo_path = get_repo_path()
    config_path = repo_path / ".flowrun" / "config.yaml"

    if config_path.exists() and not force:
        console.print("[yellow]Project already initialized[/yellow]")
        return

    write_default_config(repo_path, force=force)
    console.print(f"[green]Wrote {escape(str(config_path))}[/green]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Check a workflow file for structural problems."""
    workflow = _load_workflow(workflow_file)

    errors = workflow.validate_graph()
    if errors:
        _print_errors(errors)
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Edges: {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--strict", is_flag=True, help="Fail instead of ordering around a cycle")
def order(workflow_file: str, strict: bool) -> None:
    """Show the order in which a run would execute the nodes."""
    workflow = _load_workflow(workflow_file)
    node_map = workflow.node_map()

    try:
        execution_order = topological_order(workflow.nodes, workflow.edges, strict=strict)
    except CyclicGraphError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title="Execution Order")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Type", style="magenta")
    for i, node_id in enumerate(execution_order, start=1):
        node = node_map[node_id]
        table.add_row(str(i), escape(node.display_name), node.type)
    console.print(table)

    missing = residual_nodes(workflow.nodes, execution_order)
    if missing:
        console.print(
            f"[yellow]Not schedulable (cycle):[/yellow] {escape(', '.join(missing))}"
        )
        return

    levels = execution_levels(workflow.nodes, workflow.edges)
    console.print(f"[bold]Levels:[/] {len(levels)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--levels", is_flag=True, help="Show topological levels instead of a tree")
def visualize(workflow_file: str, levels: bool) -> None:
    """Visualize a workflow graph in the terminal."""
    workflow = _load_workflow(workflow_file)

    renderer = TerminalGraphRenderer(console)
    if levels:
        console.print(renderer.render_levels(workflow))
    else:
        console.print(renderer.render_as_tree(workflow))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")
    entries = workflow.get_entry_nodes()
    console.print(f"[bold]Entry:[/] {escape(', '.join(entries)) if entries else '(none)'}")

    errors = workflow.validate_graph()
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--config", "config_path", type=click.Path(), help="Engine config file")
@click.option("--speed", type=click.IntRange(min=0), help="Milliseconds between nodes")
@click.option("--seed", type=int, help="Seed for simulated outcomes")
@click.option("--live", is_flag=True, help="Show live execution monitor")
@click.option("--step", "step_mode", is_flag=True, help="Execute one node per confirmation")
@click.option("--stop-on-error", is_flag=True, help="End the run at the first failure")
def run(
    workflow_file: str,
    config_path: str | None,
    speed: int | None,
    seed: int | None,
    live: bool,
    step_mode: bool,
    stop_on_error: bool,
) -> None:
    """Simulate a workflow run."""
    workflow = _load_workflow(workflow_file)

    errors = workflow.validate_graph()
    if errors:
        _print_errors(errors)
        sys.exit(1)

    settings = _load_engine_settings(config_path)
    overrides = {}
    if speed is not None:
        overrides["execution_speed_ms"] = speed
    if seed is not None:
        overrides["random_seed"] = seed
    if stop_on_error:
        overrides["stop_on_error"] = True
    if overrides:
        settings = settings.model_copy(update=overrides)

    store = ExecutionStore(execution_speed=settings.execution_speed_ms)
    controller = RunController(workflow, store=store, settings=settings)

    async def drive() -> None:
        if live:
            await LiveExecutionMonitor(controller, console).monitor(workflow)
        elif step_mode:
            await _step_through(controller)
        else:
            await controller.start()

    try:
        asyncio.run(drive())
    except CyclicGraphError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if not live:
        console.print(StatusTableRenderer(console).render_from_store(workflow, store))
        for entry in store.logs:
            duration = f" ({entry.duration_ms}ms)" if entry.duration_ms is not None else ""
            console.print(
                f"  [dim]{entry.timestamp:%H:%M:%S}[/] {escape(entry.node_name)}: "
                f"{escape(entry.message)}{duration}"
            )

    if store.status == ExecutionStatus.COMPLETED:
        console.print("[green]Run completed[/green]")
    elif store.status == ExecutionStatus.ERROR:
        console.print("[red]Run failed[/red]")
        sys.exit(1)
    else:
        console.print(f"[yellow]Run ended with status {store.status.value}[/yellow]")


async def _step_through(controller: RunController) -> None:
    more = True
    while more:
        more = await controller.step()
        if controller.current_index == 0:
            break
        node_id = controller.execution_order[controller.current_index - 1]
        status = controller.store.get_node_status(node_id)
        console.print(f"[bold]{escape(node_id)}[/] -> {status.value}")
        if more and not click.confirm("Execute next node?", default=True):
            controller.stop()
            break


@main.command("check-connection")
@click.argument("workflow_file", type=click.Path(exists=True))
@click.argument("source")
@click.argument("target")
@click.option("--source-handle", help="Output handle on the source node")
@click.option("--target-handle", help="Input handle on the target node")
def check_connection_cmd(
    workflow_file: str,
    source: str,
    target: str,
    source_handle: str | None,
    target_handle: str | None,
) -> None:
    """Check whether SOURCE -> TARGET could be connected."""
    workflow = _load_workflow(workflow_file)
    connection = Connection(
        source=source,
        target=target,
        source_handle=source_handle,
        target_handle=target_handle,
    )
    result = check_connection(connection, workflow.nodes, workflow.edges)
    if result.valid:
        console.print("[green]Connection is valid[/green]")
    else:
        console.print(f"[red]Connection rejected:[/red] {escape(result.reason or '')}")
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=8000, type=int, help="Port to listen on")
def serve(host: str, port: int) -> None:
    """Start the preview API server."""
    import uvicorn

    console.print(f"[blue]Serving flowrun API on http://{host}:{port}[/blue]")
    uvicorn.run("flowrun.studio.server:app", host=host, port=port)


@main.command()
def version() -> None:
    """Show version information."""
    from flowrun import __version__

    console.print(f"flowrun v{__version__}")
    console.print("Automation graph preview engine")


if __name__ == "__main__":
    main()
