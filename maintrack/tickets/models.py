from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .state import ApprovalStatus, Stage, TicketStateMachine


@dataclass(slots=True)
class StageTimestamps:
    """Instants at which each stage was completed."""

    open: datetime
    temporary: datetime | None = None
    closure: datetime | None = None
    approval: datetime | None = None

    def get(self, stage: Stage) -> datetime | None:
        return getattr(self, stage.value)


@dataclass(slots=True)
class OpenForm:
    machine_id: str
    problem_description: str
    machine_family: str | None = None
    breakdown_type: str | None = None
    production_stopped: bool = False
    media_url: str | None = None


@dataclass(slots=True)
class TemporaryForm:
    maintenance_id: str | None
    corrective_action: str | None = None
    spare_used: str | None = None
    is_approved: bool = False


@dataclass(slots=True)
class ClosureForm:
    maintenance_id: str | None
    analysis_report: str | None = None
    media_url: str | None = None
    is_approved: bool = False


@dataclass(slots=True)
class ApprovalForm:
    approval_id: str | None
    status: ApprovalStatus | None = None
    is_approved: bool = False


@dataclass(slots=True)
class Ticket:
    """Aggregate representing one equipment breakdown report."""

    ticket_id: str
    owner_id: str
    timestamps: StageTimestamps
    open_form: OpenForm
    temporary_form: TemporaryForm | None = None
    closure_form: ClosureForm | None = None
    approval_form: ApprovalForm | None = None

    def completed_stages(self) -> set[Stage]:
        return {stage for stage in TicketStateMachine.stages() if self.timestamps.get(stage) is not None}

    @property
    def next_stage(self) -> Stage | None:
        completed = self.completed_stages()
        for stage in TicketStateMachine.stages():
            if TicketStateMachine.can_advance(completed, stage):
                return stage
        return None

    def media_references(self) -> list[str]:
        references = [self.open_form.media_url]
        if self.closure_form is not None:
            references.append(self.closure_form.media_url)
        return [reference for reference in references if reference]


# Flat record layout shared with the store. Order matches the table columns.
TICKET_FIELDS: tuple[str, ...] = (
    "ticket_id",
    "owner_id",
    "open_at",
    "temporary_at",
    "closure_at",
    "approval_at",
    "machine_id",
    "machine_family",
    "breakdown_type",
    "production_stopped",
    "problem_description",
    "open_media_url",
    "temporary_maintenance_id",
    "corrective_action",
    "spare_used",
    "temporary_approved",
    "closure_maintenance_id",
    "analysis_report",
    "closure_media_url",
    "closure_approved",
    "approval_id",
    "approval_status",
    "approval_approved",
)

_TEMPORARY_FIELDS = ("temporary_at", "temporary_maintenance_id", "corrective_action", "spare_used")
_CLOSURE_FIELDS = ("closure_at", "closure_maintenance_id", "analysis_report", "closure_media_url")
_APPROVAL_FIELDS = ("approval_at", "approval_id", "approval_status")


def ticket_to_fields(ticket: Ticket) -> dict[str, Any]:
    """Flatten a ticket into the store's column layout."""

    open_form = ticket.open_form
    temporary = ticket.temporary_form
    closure = ticket.closure_form
    approval = ticket.approval_form
    return {
        "ticket_id": ticket.ticket_id,
        "owner_id": ticket.owner_id,
        "open_at": ticket.timestamps.open,
        "temporary_at": ticket.timestamps.temporary,
        "closure_at": ticket.timestamps.closure,
        "approval_at": ticket.timestamps.approval,
        "machine_id": open_form.machine_id,
        "machine_family": open_form.machine_family,
        "breakdown_type": open_form.breakdown_type,
        "production_stopped": open_form.production_stopped,
        "problem_description": open_form.problem_description,
        "open_media_url": open_form.media_url,
        "temporary_maintenance_id": temporary.maintenance_id if temporary else None,
        "corrective_action": temporary.corrective_action if temporary else None,
        "spare_used": temporary.spare_used if temporary else None,
        "temporary_approved": temporary.is_approved if temporary else None,
        "closure_maintenance_id": closure.maintenance_id if closure else None,
        "analysis_report": closure.analysis_report if closure else None,
        "closure_media_url": closure.media_url if closure else None,
        "closure_approved": closure.is_approved if closure else None,
        "approval_id": approval.approval_id if approval else None,
        "approval_status": approval.status.value if approval and approval.status else None,
        "approval_approved": approval.is_approved if approval else None,
    }


def ticket_from_fields(fields: Mapping[str, Any]) -> Ticket:
    """Rebuild a ticket from a flat store record."""

    def _present(names: tuple[str, ...]) -> bool:
        return any(fields.get(name) is not None for name in names)

    temporary = None
    if _present(_TEMPORARY_FIELDS):
        temporary = TemporaryForm(
            maintenance_id=fields.get("temporary_maintenance_id"),
            corrective_action=fields.get("corrective_action"),
            spare_used=fields.get("spare_used"),
            is_approved=bool(fields.get("temporary_approved")),
        )

    closure = None
    if _present(_CLOSURE_FIELDS):
        closure = ClosureForm(
            maintenance_id=fields.get("closure_maintenance_id"),
            analysis_report=fields.get("analysis_report"),
            media_url=fields.get("closure_media_url"),
            is_approved=bool(fields.get("closure_approved")),
        )

    approval = None
    if _present(_APPROVAL_FIELDS):
        status = fields.get("approval_status")
        approval = ApprovalForm(
            approval_id=fields.get("approval_id"),
            status=ApprovalStatus(status) if status else None,
            is_approved=bool(fields.get("approval_approved")),
        )

    return Ticket(
        ticket_id=str(fields["ticket_id"]),
        owner_id=str(fields["owner_id"]),
        timestamps=StageTimestamps(
            open=ensure_datetime(fields["open_at"]),
            temporary=_optional_datetime(fields.get("temporary_at")),
            closure=_optional_datetime(fields.get("closure_at")),
            approval=_optional_datetime(fields.get("approval_at")),
        ),
        open_form=OpenForm(
            machine_id=str(fields["machine_id"]),
            problem_description=str(fields["problem_description"]),
            machine_family=fields.get("machine_family"),
            breakdown_type=fields.get("breakdown_type"),
            production_stopped=bool(fields.get("production_stopped")),
            media_url=fields.get("open_media_url"),
        ),
        temporary_form=temporary,
        closure_form=closure,
        approval_form=approval,
    )


def ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from the ticket store")


def _optional_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_datetime(value)
