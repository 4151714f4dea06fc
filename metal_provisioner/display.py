"""Operator-facing console output.

Everything the operator sees during a run goes through :class:`Reporter`:
step banners, tagged log lines, a single continuously updated status line per
polling phase, and table dumps of external state.
"""

from collections.abc import Iterable

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.cluster import ClusterNodeStatus, HardwareRecord
from metal_provisioner.models.node import Node, NodeStatus
from metal_provisioner.models.workflow import WorkflowPhase, WorkflowState

logger = get_logger(__name__)

STATUS_LABELS = {
    NodeStatus.ONLINE_TARGET_RUNTIME: "[green]Talos running[/green]",
    NodeStatus.ONLINE_UNKNOWN_OS: "[yellow]Online (unknown OS)[/yellow]",
    NodeStatus.OFFLINE: "[red]Offline[/red]",
}


def render_dots(flags: Iterable[bool], on: str = "●", off: str = "○") -> str:
    """Render one character per node."""
    return "".join(on if flag else off for flag in flags)


class StatusLine:
    """A single line that is redrawn in place while a phase polls."""

    def __init__(self, console: Console):
        self._live = Live(Text(""), console=console, auto_refresh=False, transient=False)

    def __enter__(self) -> "StatusLine":
        self._live.start()
        return self

    def update(self, message: str) -> None:
        self._live.update(Text(f"  {message}"), refresh=True)

    def __exit__(self, *exc) -> None:
        self._live.stop()


class Reporter:
    """Prints progress, warnings and diagnostics for a provisioning run."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self.warnings: list[str] = []

    def banner(self, title: str) -> None:
        self.console.print()
        self.console.rule(f"[bold cyan]{title}[/bold cyan]", style="cyan")

    def step(self, number: int, title: str) -> None:
        logger.info(f"Step {number}: {title}")
        self.banner(f"STEP {number}: {title}")

    def info(self, message: str) -> None:
        logger.info(message)
        self.console.print(f"[blue]\\[INFO][/blue] {message}")

    def success(self, message: str) -> None:
        logger.info(message)
        self.console.print(f"[green]\\[OK][/green] {message}")

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)
        self.console.print(f"[yellow]\\[WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        logger.error(message)
        self.console.print(f"[red]\\[ERROR][/red] {message}")

    def status_line(self) -> StatusLine:
        return StatusLine(self.console)

    def node_statuses(self, nodes: Iterable[Node], statuses: dict[str, NodeStatus]) -> None:
        for node in nodes:
            self.console.print(f"  {node.name}: {STATUS_LABELS[statuses[node.name]]}")

    def dump_workflows(self, states: list[WorkflowState], namespace: str) -> None:
        """Print the full workflow state for diagnosis."""
        table = Table(title=f"Workflows ({namespace})")
        table.add_column("Name", style="cyan")
        table.add_column("State")
        table.add_column("Current Action", style="magenta")

        styles = {
            WorkflowPhase.COMPLETED: "green",
            WorkflowPhase.FAILED: "red",
            WorkflowPhase.RUNNING: "yellow",
            WorkflowPhase.PENDING: "dim",
        }
        for state in sorted(states, key=lambda s: s.name):
            table.add_row(
                state.name,
                Text(state.state or "PENDING", style=styles[state.phase]),
                state.current_action or "-",
            )
        if not states:
            table.add_row("-", "no workflows found", "-")
        self.console.print(table)

    def hardware_table(self, records: list[HardwareRecord]) -> None:
        table = Table(title="Hardware")
        table.add_column("Name", style="cyan")
        table.add_column("MAC", style="magenta")
        table.add_column("IP", style="yellow")
        table.add_column("PXE")
        table.add_column("Workflows")
        for record in sorted(records, key=lambda r: r.name):
            table.add_row(
                record.name,
                record.mac,
                record.ip,
                "[green]allowed[/green]" if record.allow_pxe else "[dim]disabled[/dim]",
                "[green]allowed[/green]" if record.allow_workflow else "[dim]disabled[/dim]",
            )
        self.console.print(table)

    def cluster_nodes(self, nodes: list[ClusterNodeStatus]) -> None:
        table = Table(title=f"Cluster Nodes ({len(nodes)})")
        table.add_column("Name", style="cyan")
        table.add_column("Role", style="magenta")
        table.add_column("Status")
        table.add_column("Version", style="blue")
        table.add_column("Internal IP", style="yellow")
        for node in sorted(nodes, key=lambda n: n.name):
            status = "[green]✓ Ready[/green]" if node.ready else "[red]✗ NotReady[/red]"
            table.add_row(node.name, node.role, status, node.kubelet_version, node.internal_ip)
        self.console.print(table)
