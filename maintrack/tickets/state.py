from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    """Ordered stages of a breakdown ticket's lifecycle."""

    OPEN = "open"
    TEMPORARY = "temporary"
    CLOSURE = "closure"
    APPROVAL = "approval"

    @property
    def predecessor(self) -> Stage | None:
        return TicketStateMachine.predecessor(self)

    @property
    def timestamp_field(self) -> str:
        return f"{self.value}_at"

    @property
    def code_field(self) -> str | None:
        return TicketStateMachine.code_field(self)


class ApprovalStatus(str, Enum):
    """Verdicts available at the approval stage."""

    APPROVED = "Approved"
    REJECTED = "Rejected"
    PENDING = "Pending"


class TicketStateMachine:
    """Validate sequential stage gating."""

    _ORDER: tuple[Stage, ...] = (Stage.OPEN, Stage.TEMPORARY, Stage.CLOSURE, Stage.APPROVAL)

    _CODE_FIELDS: dict[Stage, str] = {
        Stage.TEMPORARY: "temporary_maintenance_id",
        Stage.CLOSURE: "closure_maintenance_id",
        Stage.APPROVAL: "approval_id",
    }

    @classmethod
    def stages(cls) -> tuple[Stage, ...]:
        return cls._ORDER

    @classmethod
    def predecessor(cls, stage: Stage) -> Stage | None:
        index = cls._ORDER.index(stage)
        if index == 0:
            return None
        return cls._ORDER[index - 1]

    @classmethod
    def can_advance(cls, completed: set[Stage], target: Stage) -> bool:
        """Return True when ``target`` is pending and its predecessor is complete."""

        if target in completed:
            return False
        previous = cls.predecessor(target)
        return previous is None or previous in completed

    @classmethod
    def code_field(cls, stage: Stage) -> str | None:
        """Column holding the identifying code of ``stage``; the open stage has none."""

        return cls._CODE_FIELDS.get(stage)

    @classmethod
    def gate(cls, target: Stage) -> tuple[tuple[Stage, ...], tuple[Stage, ...]]:
        """Return the (completed, pending) stages a standard advance to ``target`` requires."""

        previous = cls.predecessor(target)
        completed = () if previous is None else (previous,)
        return completed, (target,)
