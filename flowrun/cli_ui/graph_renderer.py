"""Terminal rendering of workflow graphs and run status.

Tree and level views of a workflow, plus a per-node status table, built
with Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowrun.core.errors import CyclicGraphError
from flowrun.core.execution_state import NodeStatus
from flowrun.core.graph_schema import Edge, Node, WorkflowGraph
from flowrun.core.node_registry import NodeType
from flowrun.core.scheduler import execution_levels


class TerminalGraphRenderer:
    """
    Renders workflow graphs in the terminal.

    render_as_tree() shows the real structure from every entry node, with
    the output handle or branch label on each edge. render_levels() shows
    topological generations: nodes on one line have no dependency on each
    other.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.MANUAL_TRIGGER: ("[>]", "green"),
        NodeType.WEBHOOK_TRIGGER: ("[W]", "green"),
        NodeType.HTTP_REQUEST: ("[H]", "cyan"),
        NodeType.SEND_EMAIL: ("[E]", "cyan"),
        NodeType.SEND_SMS: ("[S]", "cyan"),
        NodeType.DELAY: ("[D]", "blue"),
        NodeType.CONDITION: ("[?]", "magenta"),
        NodeType.TRANSFORM: ("[T]", "yellow"),
    }

    STATUS_COLORS = {
        "idle": "dim",
        "pending": "dim",
        "running": "blue bold",
        "success": "green",
        "error": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {
        "success": " ✓",
        "error": " ✗",
        "running": " ⟳",
        "skipped": " ⊘",
    }

    @staticmethod
    def _normalize_status(status: NodeStatus | str | None) -> str:
        """Normalize status to string for consistent lookup."""
        if isinstance(status, NodeStatus):
            return status.value
        return str(status) if status else "pending"

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _build_edge_map(self, workflow: WorkflowGraph) -> dict[str, list[Edge]]:
        """Outgoing edges by source node ID."""
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def _node_text(self, node: Node, statuses: dict[str, NodeStatus | str] | None) -> str:
        symbol, color = self.NODE_STYLES.get(NodeType(node.type), ("[ ]", "white"))
        # Escape node labels to prevent Rich markup injection
        safe_label = escape(node.display_name)
        status = self._normalize_status(statuses.get(node.id)) if statuses else None

        if status and status not in ("pending", "idle"):
            status_color = self.STATUS_COLORS.get(status, "white")
            mark = self.STATUS_MARKS.get(status, "")
            return f"[{status_color}]{symbol} {safe_label}{mark}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_levels(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
    ) -> str:
        """Render the graph one topological generation per line."""
        node_map = workflow.node_map()
        try:
            levels = execution_levels(workflow.nodes, workflow.edges)
        except CyclicGraphError:
            # Has cycles - use simple layout
            levels = [[n.id for n in workflow.nodes]]

        lines = []
        for level_idx, level in enumerate(levels):
            level_nodes = [
                self._node_text(node_map[node_id], statuses)
                for node_id in level
                if node_id in node_map
            ]
            lines.append("  |  ".join(level_nodes))
            if level_idx < len(levels) - 1:
                lines.append("  v")

        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree, one subtree per entry node.

        Args:
            workflow: The workflow graph to render
            statuses: Optional dict of node_id -> current status
            max_depth: Maximum tree depth to prevent exponential blow-up (default: 50)
        """
        tree = Tree(f"[bold]{escape(workflow.name)}[/]")

        node_map = workflow.node_map()
        edge_map = self._build_edge_map(workflow)

        entries = workflow.get_entry_nodes()
        if not entries:
            tree.add("[red]No entry node (every node has an incoming edge)[/]")
            return tree

        for entry_id in entries:
            self._add_node_to_tree(
                tree,
                node_map[entry_id],
                statuses,
                node_map,
                edge_map,
                visited=set(),
                depth=0,
                max_depth=max_depth,
            )

        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, NodeStatus | str] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to tree with depth limiting."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return

        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))

        for edge in edge_map.get(node.id, []):
            child_node = node_map.get(edge.target)
            if not child_node:
                continue
            label = edge.label
            if not label and node.definition.has_named_outputs:
                label = edge.output_handle(node.type)
            target = branch.add(f"[dim]({escape(label)})[/]") if label else branch
            self._add_node_to_tree(
                target,
                child_node,
                statuses,
                node_map,
                edge_map,
                visited.copy(),
                depth + 1,
                max_depth,
            )


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    All user-controlled strings (labels, outputs, errors) are escaped.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str],
        outputs: dict[str, Any] | None = None,
        errors: dict[str, str | None] | None = None,
        title: str | None = None,
    ) -> Table:
        """
        Render execution status as a table.
        """
        table = Table(title=escape(title or workflow.name))

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for node in workflow.nodes:
            status = TerminalGraphRenderer._normalize_status(statuses.get(node.id, "pending"))
            val = outputs.get(node.id) if outputs else None
            error = errors.get(node.id) if errors else None
            output = error if error else (val if val is not None else "")

            if status == "success":
                status_text = "[green]✓ Success[/]"
            elif status == "error":
                status_text = "[red]✗ Error[/]"
            elif status == "running":
                status_text = "[blue]⟳ Running[/]"
            elif status == "skipped":
                status_text = "[dim]⊘ Skipped[/]"
            elif status == "idle":
                status_text = "[dim]○ Idle[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            output_str = escape(str(output))
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(escape(node.display_name), node.type, status_text, output_str)

        return table

    def render_from_store(self, workflow: WorkflowGraph, store) -> Table:
        """Status table for the current contents of an ExecutionStore."""
        statuses = {node_id: s.status for node_id, s in store.node_states.items()}
        errors = {node_id: s.error for node_id, s in store.node_states.items()}
        return self.render_status_table(
            workflow,
            statuses,
            outputs=store.execution_data,
            errors=errors,
            title=f"{workflow.name} [{store.status.value}]",
        )
