"""Breakdown ticket domain models and lifecycle stages."""

from .models import ApprovalForm, ClosureForm, OpenForm, StageTimestamps, TemporaryForm, Ticket
from .state import ApprovalStatus, Stage, TicketStateMachine

__all__ = [
    "ApprovalForm",
    "ApprovalStatus",
    "ClosureForm",
    "OpenForm",
    "Stage",
    "StageTimestamps",
    "TemporaryForm",
    "Ticket",
    "TicketStateMachine",
]
