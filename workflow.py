import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class TicketType(str, Enum):
    INTERVENTION = "intervention"
    SUPPORT = "support"
    BILLING = "billing"
    GENERAL = "general"


class TicketPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


TICKET_STATUS_OPTIONS = [status.value for status in TicketStatus]
TICKET_TYPE_OPTIONS = [ticket_type.value for ticket_type in TicketType]
TICKET_PRIORITY_OPTIONS = [priority.value for priority in TicketPriority]

FINAL_STATUSES = frozenset({TicketStatus.CLOSED, TicketStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset(
        {TicketStatus.IN_PROGRESS, TicketStatus.CLOSED, TicketStatus.CANCELLED}
    ),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.RESOLVED, TicketStatus.CANCELLED}),
    TicketStatus.RESOLVED: frozenset(
        {TicketStatus.CLOSED, TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED}
    ),
    TicketStatus.CLOSED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class Allowed:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    reason: str

    def __bool__(self) -> bool:
        return False


TransitionResult = Allowed | Rejected


def _parse_status(value: "TicketStatus | str | None") -> TicketStatus | None:
    if isinstance(value, TicketStatus):
        return value
    try:
        return TicketStatus((value or "").strip().lower())
    except ValueError:
        return None


def is_terminal(status: "TicketStatus | str") -> bool:
    """Closed and cancelled tickets never move again; resolved can still be closed."""

    parsed = _parse_status(status)
    return parsed in FINAL_STATUSES


def check_transition(
    current: "TicketStatus | str", target: "TicketStatus | str"
) -> TransitionResult:
    current_status = _parse_status(current)
    target_status = _parse_status(target)

    if current_status is None:
        return Rejected(f"Unknown current status '{current}'.")
    if target_status is None:
        return Rejected(f"Unknown ticket status '{target}'.")
    if current_status == target_status:
        return Rejected(f"Ticket is already {current_status.value}.")
    if current_status in FINAL_STATUSES:
        return Rejected(f"Ticket is {current_status.value} and can no longer change.")
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        return Rejected(
            f"Cannot move a ticket from {current_status.value} to {target_status.value}."
        )
    return Allowed()


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        return None


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    title: str
    description: str = ""
    completed: bool = False
    completed_at: datetime | None = None
    notes: str | None = None
    required: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "WorkflowStep":
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description") or ""),
            completed=bool(data.get("completed", False)),
            completed_at=_parse_timestamp(data.get("completed_at") or data.get("completedAt")),
            notes=data.get("notes") or None,
            required=bool(data.get("required", True)),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "completed_at": _format_timestamp(self.completed_at),
            "notes": self.notes,
            "required": self.required,
        }


# Eight-step field checklist used whenever a ticket has no steps of its own.
DEFAULT_WORKFLOW_TEMPLATE: tuple[WorkflowStep, ...] = (
    WorkflowStep(
        id="1",
        title="Arrival on site",
        description="Confirm arrival, contact the client, assess the environment",
    ),
    WorkflowStep(
        id="2",
        title="Initial diagnostic",
        description="Identify the problem, test components, document the current state",
    ),
    WorkflowStep(
        id="3",
        title="Intervention preparation",
        description="Gather tools, prepare the workspace, back up data if needed",
    ),
    WorkflowStep(
        id="4",
        title="Technical intervention",
        description="Perform repairs, installations or configuration as needed",
    ),
    WorkflowStep(
        id="5",
        title="Testing and validation",
        description="Verify operation, test every feature, validate with the client",
    ),
    WorkflowStep(
        id="6",
        title="Documentation",
        description="Take photos, document changes, prepare the client report",
        required=False,
    ),
    WorkflowStep(
        id="7",
        title="Client training",
        description="Explain changes, train on new features, share advice",
        required=False,
    ),
    WorkflowStep(
        id="8",
        title="Cleanup and wrap-up",
        description="Clean the workspace, put tools away, finalize documentation",
    ),
)


def default_workflow_steps() -> list[WorkflowStep]:
    return list(DEFAULT_WORKFLOW_TEMPLATE)


def coerce_steps(raw_steps: Iterable[object] | None) -> list[WorkflowStep]:
    steps: list[WorkflowStep] = []
    for raw in raw_steps or []:
        if isinstance(raw, WorkflowStep):
            steps.append(raw)
        elif isinstance(raw, Mapping):
            steps.append(WorkflowStep.from_dict(raw))
    return steps


def ensure_workflow_steps(raw_steps: Iterable[object] | None) -> list[WorkflowStep]:
    steps = coerce_steps(raw_steps)
    return steps if steps else default_workflow_steps()


def completion_percentage(steps: Iterable[WorkflowStep]) -> int:
    steps = list(steps)
    if not steps:
        return 0
    completed = sum(1 for step in steps if step.completed)
    return math.floor(100 * completed / len(steps) + 0.5)


def find_step(steps: Iterable[WorkflowStep], step_id: str) -> WorkflowStep | None:
    for step in steps:
        if step.id == str(step_id):
            return step
    return None


def toggle_step(
    steps: Iterable[WorkflowStep],
    step_id: str,
    completed: bool,
    notes: str | None = None,
    now: datetime | None = None,
) -> list[WorkflowStep]:
    timestamp = now or datetime.now(UTC)
    updated: list[WorkflowStep] = []
    for step in steps:
        if step.id != str(step_id):
            updated.append(step)
            continue
        updated.append(
            replace(
                step,
                completed=completed,
                completed_at=timestamp if completed else None,
                notes=notes or step.notes,
            )
        )
    return updated


def missing_required_steps(steps: Iterable[WorkflowStep]) -> list[WorkflowStep]:
    return [step for step in steps if step.required and not step.completed]


def check_finalization(
    steps: Iterable[WorkflowStep], completion_notes: str | None
) -> TransitionResult:
    missing = missing_required_steps(steps)
    if missing:
        titles = ", ".join(step.title for step in missing)
        return Rejected(f"Required steps are not completed: {titles}.")
    if not (completion_notes or "").strip():
        return Rejected("Completion notes are required to finish the intervention.")
    return Allowed()
