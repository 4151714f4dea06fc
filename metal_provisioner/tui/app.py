"""Live dashboard of provisioning workflows and hardware."""

from kubernetes.client.rest import ApiException
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Vertical
from textual.timer import Timer
from textual.widgets import DataTable, Footer, Header, Static

from metal_provisioner.exceptions import KubernetesError
from metal_provisioner.logging_config import get_logger
from metal_provisioner.models.cluster import HardwareRecord
from metal_provisioner.models.workflow import WorkflowPhase, WorkflowState, WorkflowSummary

logger = get_logger(__name__)

PHASE_STYLES = {
    WorkflowPhase.COMPLETED: "green",
    WorkflowPhase.FAILED: "red",
    WorkflowPhase.RUNNING: "yellow",
    WorkflowPhase.PENDING: "dim",
}


class ProvisioningTUI(App):
    """Terminal UI that follows workflows, hardware and the reset job."""

    CSS = """
    Screen {
        layout: vertical;
    }

    #main-container {
        height: 100%;
    }

    #summary-container {
        height: 5;
        border: solid $primary;
        margin: 1;
    }

    #workflows-container {
        height: 45%;
        border: solid $primary;
        margin: 1;
    }

    #hardware-container {
        height: 1fr;
        border: solid $primary;
        margin: 1;
    }

    DataTable {
        height: 100%;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", priority=True),
        Binding("r", "refresh", "Refresh", priority=True),
        Binding("h", "help", "Help", priority=True),
        Binding("escape", "quit", "Quit", show=False),
    ]

    def __init__(
        self,
        tinkerbell=None,
        cluster=None,
        cluster_name: str = "sandbox",
        job_name: str = "cluster-reset",
        expected: int = 0,
        refresh_interval: int = 5,
    ):
        """Initialize the TUI.

        Args:
            tinkerbell: TinkerbellClient used to list workflows and hardware
            cluster: Optional management ClusterClient used to show the reset job
            cluster_name: Name shown in the title
            job_name: Name of the delegated reset job
            expected: Number of nodes, for the progress bar
            refresh_interval: Auto-refresh interval in seconds
        """
        super().__init__()
        self.tinkerbell = tinkerbell
        self.cluster = cluster
        self.cluster_name = cluster_name
        self.job_name = job_name
        self.expected = expected
        self.refresh_interval = refresh_interval
        self._refresh_timer: Timer | None = None
        self._is_refreshing: bool = False
        self._connection_error: bool = False
        self._workflows: list[WorkflowState] = []
        self._hardware: list[HardwareRecord] = []

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical(id="main-container"):
            with Container(id="summary-container"):
                yield Static("Waiting for data...", id="summary-content")
            with Container(id="workflows-container"):
                yield DataTable(id="workflows-table", cursor_type="row")
            with Container(id="hardware-container"):
                yield DataTable(id="hardware-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        self.title = f"Provisioning: {self.cluster_name}"
        self.sub_title = "Press Q to quit, R to refresh, H for help"

        self.query_one("#summary-container").border_title = "Progress"
        self.query_one("#workflows-container").border_title = "Workflows"
        self.query_one("#hardware-container").border_title = "Hardware"

        self.query_one("#workflows-table", DataTable).add_columns(
            "Name", "State", "Current Action"
        )
        self.query_one("#hardware-table", DataTable).add_columns(
            "Name", "MAC", "IP", "PXE", "Workflows"
        )

        self._refresh_timer = self.set_interval(
            self.refresh_interval, self._auto_refresh, name="auto_refresh"
        )
        self.refresh_data()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Show details of the selected workflow."""
        row_index = event.cursor_row
        if event.data_table.id == "workflows-table" and 0 <= row_index < len(self._workflows):
            workflow = self._workflows[row_index]
            self.notify(
                f"Workflow: {workflow.name}\n"
                f"State: {workflow.state or 'PENDING'}\n"
                f"Phase: {workflow.phase.value}\n"
                f"Current action: {workflow.current_action or '-'}",
                title=f"Workflow: {workflow.short_name}",
                timeout=10,
            )

    def action_quit(self) -> None:
        if self._refresh_timer is not None:
            self._refresh_timer.stop()
        self.exit()

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_help(self) -> None:
        help_text = (
            "Keyboard Shortcuts:\n"
            "  Q / ESC - Quit application\n"
            "  R - Manually refresh data\n"
            "  H - Show this help\n"
            "  ↑/↓ - Navigate tables\n"
            "  Enter - View workflow details\n\n"
            f"Auto-refresh: Every {self.refresh_interval} seconds"
        )
        self.notify(help_text, title="Help", timeout=10)

    def _auto_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        """Reload workflows, hardware and job status."""
        if self._is_refreshing:
            logger.debug("Refresh already in progress, skipping")
            return
        if self.tinkerbell is None:
            self._handle_connection_error()
            return

        self._is_refreshing = True
        self.sub_title = "Loading... | Press Q to quit, R to refresh, H for help"
        try:
            self._workflows = sorted(self.tinkerbell.list_workflow_states(), key=lambda s: s.name)
            self._hardware = sorted(self.tinkerbell.list_hardware(), key=lambda r: r.name)
            self._update_display(self._fetch_job_status())
            if self._connection_error:
                self._connection_error = False
                self.notify("Connection restored", severity="information")
        except KubernetesError as e:
            logger.warning(f"Refresh failed: {e.message}")
            self._handle_connection_error()
        finally:
            self.sub_title = "Press Q to quit, R to refresh, H for help"
            self._is_refreshing = False

    def _fetch_job_status(self) -> str:
        if self.cluster is None or self.cluster.batch is None:
            return "n/a"
        try:
            job = self.cluster.batch.read_namespaced_job(
                self.job_name, self.tinkerbell.namespace
            )
        except (ApiException, OSError) as e:
            logger.debug(f"Reset job not readable: {e}")
            return "none"
        status = job.status
        if status is None:
            return "pending"
        if status.succeeded:
            return "succeeded"
        if status.failed:
            return "failed"
        if status.active:
            return "running"
        return "pending"

    def _update_display(self, job_status: str) -> None:
        expected = self.expected or len(self._hardware)
        summary = WorkflowSummary(states=self._workflows, expected=expected)
        self.query_one("#summary-content", Static).update(
            f"{summary.status_line()}\n"
            f"Failed: {summary.failed}  Pending: {summary.pending}  "
            f"Reset job: {job_status}"
        )

        workflows_table = self.query_one("#workflows-table", DataTable)
        workflows_table.clear()
        for workflow in self._workflows:
            workflows_table.add_row(
                workflow.name,
                Text(workflow.state or "PENDING", style=PHASE_STYLES[workflow.phase]),
                workflow.current_action or "-",
            )

        hardware_table = self.query_one("#hardware-table", DataTable)
        hardware_table.clear()
        for record in self._hardware:
            hardware_table.add_row(
                record.name,
                record.mac,
                record.ip,
                Text("allowed", style="green") if record.allow_pxe else Text("disabled", style="dim"),
                Text("allowed", style="green")
                if record.allow_workflow
                else Text("disabled", style="dim"),
            )

    def _handle_connection_error(self) -> None:
        if not self._connection_error:
            self._connection_error = True
            self.notify(
                "Unable to reach the management cluster. "
                "Displaying last known state. "
                "Will retry automatically.",
                title="Connection Error",
                severity="warning",
                timeout=10,
            )
            logger.warning("Management cluster connection error")
