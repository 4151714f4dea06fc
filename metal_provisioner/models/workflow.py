"""Models for provisioning workflows reported by the workflow engine."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

COMPLETED_STATES = {"SUCCESS", "STATE_SUCCESS"}
FAILED_STATES = {"FAILED", "STATE_FAILED", "TIMEOUT", "STATE_TIMEOUT"}
RUNNING_STATES = {"RUNNING", "STATE_RUNNING"}

# Short labels for the status line
ACTION_LABELS = {
    "stream-talos-image": "imaging",
    "trigger-reboot": "reboot",
}

WORKFLOW_PREFIXES = ("provision-", "reboot-")


class WorkflowPhase(str, Enum):
    """Bucket a workflow state falls into."""

    COMPLETED = "completed"
    FAILED = "failed"
    RUNNING = "running"
    PENDING = "pending"


def classify_state(state: str | None) -> WorkflowPhase:
    """Map a raw workflow state to a phase.

    Every input maps to exactly one phase; anything unrecognized is pending.
    """
    normalized = (state or "").strip().upper()
    if normalized in COMPLETED_STATES:
        return WorkflowPhase.COMPLETED
    if normalized in FAILED_STATES:
        return WorkflowPhase.FAILED
    if normalized in RUNNING_STATES:
        return WorkflowPhase.RUNNING
    return WorkflowPhase.PENDING


class WorkflowState(BaseModel):
    """Name, state and current action of a single workflow."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: str | None = None
    current_action: str | None = None

    @property
    def phase(self) -> WorkflowPhase:
        return classify_state(self.state)

    @property
    def short_name(self) -> str:
        for prefix in WORKFLOW_PREFIXES:
            if self.name.startswith(prefix):
                return self.name[len(prefix) :]
        return self.name

    @property
    def marker(self) -> str:
        """Compact per-workflow marker used in the status line."""
        phase = self.phase
        if phase is WorkflowPhase.COMPLETED:
            return "✓"
        if phase is WorkflowPhase.FAILED:
            return "✗"
        if phase is WorkflowPhase.RUNNING:
            action = self.current_action or "..."
            return ACTION_LABELS.get(action, action)
        return "○"

    @classmethod
    def from_resource(cls, resource: dict) -> "WorkflowState":
        """Build from a Workflow custom resource."""
        status = resource.get("status") or {}
        return cls(
            name=resource.get("metadata", {}).get("name", "unknown"),
            state=status.get("state"),
            current_action=status.get("currentAction"),
        )


class WorkflowSummary(BaseModel):
    """Classification of every workflow seen in one poll."""

    states: list[WorkflowState] = Field(default_factory=list)
    expected: int = 0

    def count(self, phase: WorkflowPhase) -> int:
        return sum(1 for s in self.states if s.phase is phase)

    @property
    def completed(self) -> int:
        return self.count(WorkflowPhase.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(WorkflowPhase.FAILED)

    @property
    def running(self) -> int:
        return self.count(WorkflowPhase.RUNNING)

    @property
    def pending(self) -> int:
        return self.count(WorkflowPhase.PENDING)

    @property
    def progress(self) -> tuple[int, int]:
        """The pair used for stall detection."""
        return (self.completed, self.running)

    @property
    def is_complete(self) -> bool:
        return self.expected > 0 and self.completed >= self.expected

    def progress_bar(self) -> str:
        return "█" * self.completed + "▓" * self.running + "░" * self.pending

    def status_line(self) -> str:
        markers = " ".join(f"{s.short_name}:{s.marker}" for s in self.states)
        return f"[{self.progress_bar()}] {self.completed}/{self.expected} | {markers}"
