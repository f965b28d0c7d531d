from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Mapping

from maintrack.security.allowlist import AllowlistConfig, AllowlistValidationError, normalize_code

from .attachments import AttachmentManager, InvalidAttachmentError, MediaUpload
from .mirror import MirrorSync
from .models import OpenForm, StageTimestamps, Ticket, ticket_to_fields
from .store import TicketFilter, TicketStore
from .state import ApprovalStatus, Stage, TicketStateMachine

logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGE = "Not authorized or breakdown not found"

# Fields an administrator may overwrite directly.
ADMIN_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {
        "machine_id",
        "machine_family",
        "breakdown_type",
        "production_stopped",
        "problem_description",
        "temporary_maintenance_id",
        "corrective_action",
        "spare_used",
        "closure_maintenance_id",
        "analysis_report",
        "approval_id",
        "approval_status",
    }
)

_APPROVED_FLAG_FIELDS: dict[Stage, str] = {
    Stage.TEMPORARY: "temporary_approved",
    Stage.CLOSURE: "closure_approved",
    Stage.APPROVAL: "approval_approved",
}

_ADMIN_EDIT_ATTEMPTS = 3


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketValidationError(TicketServiceError):
    """Raised when input is missing or malformed; nothing was written."""


class InvalidCodeError(TicketValidationError):
    """Raised when a stage code is not part of its allowlist."""


class TicketAccessDeniedError(TicketServiceError):
    """Raised when a ticket is missing, owned by someone else or not ready for the stage."""

    def __init__(self, message: str = ACCESS_DENIED_MESSAGE) -> None:
        super().__init__(message)


class TicketNotFoundError(TicketServiceError):
    """Raised when an administrative operation targets a missing ticket."""


def generate_ticket_id() -> str:
    """Return a time based identifier such as ``BD-LQ2X8ZK1-3F9A``."""

    millis = int(time.time() * 1000)
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    encoded = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        encoded = digits[remainder] + encoded
    return f"BD-{encoded or '0'}-{secrets.token_hex(2).upper()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise TicketValidationError(f"Field '{field}' is required")
    return str(value).strip()


class TicketService:
    """Orchestrate the open -> temporary -> closure -> approval lifecycle."""

    def __init__(
        self,
        store: TicketStore,
        *,
        allowlists: AllowlistConfig,
        attachments: AttachmentManager,
        mirror: MirrorSync | None = None,
        sync_inline: bool = False,
    ) -> None:
        self._store = store
        self._allowlists = allowlists
        self._attachments = attachments
        self._mirror = mirror
        self._sync_inline = sync_inline

    async def ensure_schema(self) -> None:
        await self._store.ensure_schema()

    async def open_ticket(
        self,
        *,
        owner_id: str,
        machine_id: str,
        problem_description: str,
        machine_family: str | None = None,
        breakdown_type: str | None = None,
        production_stopped: bool = False,
        media: MediaUpload | None = None,
    ) -> Ticket:
        owner_id = _require(owner_id, "userId")
        form = OpenForm(
            machine_id=_require(machine_id, "machineId"),
            problem_description=_require(problem_description, "problemDescription"),
            machine_family=machine_family,
            breakdown_type=breakdown_type,
            production_stopped=production_stopped,
        )
        form.media_url = await self._store_media(media)
        ticket = Ticket(
            ticket_id=generate_ticket_id(),
            owner_id=owner_id,
            timestamps=StageTimestamps(open=_utcnow()),
            open_form=form,
        )
        try:
            await self._store.insert(ticket)
        except Exception:
            await self._attachments.retire(form.media_url)
            raise
        logger.info("Opened breakdown %s for user %s", ticket.ticket_id, owner_id)
        await self._publish()
        return ticket

    async def advance_temporary(
        self,
        ticket_id: str,
        *,
        owner_id: str,
        maintenance_id: str,
        corrective_action: str | None = None,
        spare_used: str | None = None,
    ) -> Ticket:
        code = self._validate_code(Stage.TEMPORARY, maintenance_id)
        return await self._advance(
            ticket_id,
            owner_id,
            Stage.TEMPORARY,
            {
                "temporary_maintenance_id": code,
                "corrective_action": corrective_action,
                "spare_used": spare_used,
                "temporary_approved": True,
            },
        )

    async def advance_closure(
        self,
        ticket_id: str,
        *,
        owner_id: str,
        maintenance_id: str,
        analysis_report: str | None = None,
        media: MediaUpload | None = None,
    ) -> Ticket:
        code = self._validate_code(Stage.CLOSURE, maintenance_id)
        media_url = await self._store_media(media)
        try:
            return await self._advance(
                ticket_id,
                owner_id,
                Stage.CLOSURE,
                {
                    "closure_maintenance_id": code,
                    "analysis_report": analysis_report,
                    "closure_media_url": media_url,
                    "closure_approved": True,
                },
            )
        except Exception:
            await self._attachments.retire(media_url)
            raise

    async def advance_approval(
        self,
        ticket_id: str,
        *,
        owner_id: str,
        approval_id: str,
        status: ApprovalStatus | str,
    ) -> Ticket:
        code = self._validate_code(Stage.APPROVAL, approval_id)
        verdict = self._parse_status(status)
        return await self._advance(
            ticket_id,
            owner_id,
            Stage.APPROVAL,
            {
                "approval_id": code,
                "approval_status": verdict.value,
                "approval_approved": True,
            },
        )

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._store.find_one(TicketFilter(ticket_id=ticket_id))
        if ticket is None:
            raise TicketNotFoundError(f"Breakdown {ticket_id} not found")
        return ticket

    async def list_tickets(self, *, owner_id: str | None = None) -> list[Ticket]:
        return await self._store.find_many(TicketFilter(owner_id=owner_id))

    async def admin_edit(
        self,
        ticket_id: str,
        changes: Mapping[str, Any],
        *,
        actor: str,
        open_media: MediaUpload | None = None,
        closure_media: MediaUpload | None = None,
    ) -> Ticket:
        """Overwrite individual fields of any stage, bypassing stage gating.

        Writing a stage's code re-stamps that stage's timestamp, even when the
        earlier stages were never completed.
        """

        unknown = set(changes) - ADMIN_EDITABLE_FIELDS
        if unknown:
            raise TicketValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if not changes and open_media is None and closure_media is None:
            raise TicketValidationError("No fields provided for update")

        updates: dict[str, Any] = dict(changes)
        for field in ("machine_id", "problem_description"):
            if field in updates:
                updates[field] = _require(updates[field], field)
        if "approval_status" in updates and updates["approval_status"] is not None:
            updates["approval_status"] = self._parse_status(updates["approval_status"]).value

        now = _utcnow()
        for stage, flag_field in _APPROVED_FLAG_FIELDS.items():
            code_field = stage.code_field
            if code_field in updates:
                updates[code_field] = normalize_code(_require(updates[code_field], code_field))
                updates[flag_field] = self._allowlists.is_allowed(stage, updates[code_field])
                updates[stage.timestamp_field] = now

        new_media: dict[str, str] = {}
        try:
            for field, upload in (("open_media_url", open_media), ("closure_media_url", closure_media)):
                reference = await self._store_media(upload)
                if reference is not None:
                    new_media[field] = reference
            updates.update(new_media)
            updated, replaced = await self._apply_admin_update(ticket_id, updates, tuple(new_media))
        except Exception:
            for reference in new_media.values():
                await self._attachments.retire(reference)
            raise

        for reference in replaced:
            await self._attachments.retire(reference)

        logger.info("Admin %s edited breakdown %s: %s", actor, ticket_id, ", ".join(sorted(updates)))
        await self._publish()
        return updated

    async def admin_delete(self, ticket_id: str, *, actor: str) -> None:
        ticket = await self._store.find_one(TicketFilter(ticket_id=ticket_id))
        if ticket is None:
            raise TicketNotFoundError(f"Breakdown {ticket_id} not found")
        await self._attachments.purge(ticket)
        deleted = await self._store.delete_one(TicketFilter(ticket_id=ticket_id))
        if not deleted:
            raise TicketNotFoundError(f"Breakdown {ticket_id} not found")
        logger.info("Admin %s deleted breakdown %s", actor, ticket_id)
        await self._publish()

    async def resync(self) -> bool:
        """Run a mirror sync immediately and report whether it succeeded."""

        if self._mirror is None:
            logger.info("Mirror sync requested but no mirror is configured")
            return False
        return await self._mirror.sync()

    async def drain_mirror(self) -> None:
        if self._mirror is not None:
            await self._mirror.drain()

    async def _advance(self, ticket_id: str, owner_id: str, stage: Stage, form_fields: dict[str, Any]) -> Ticket:
        owner_id = _require(owner_id, "userId")
        completed, pending = TicketStateMachine.gate(stage)
        match = TicketFilter(ticket_id=ticket_id, owner_id=owner_id, completed=completed, pending=pending)
        updates = {**form_fields, stage.timestamp_field: _utcnow()}
        ticket = await self._store.find_one_and_update(match, updates)
        if ticket is None:
            logger.warning("Rejected %s update for breakdown %s by user %s", stage.value, ticket_id, owner_id)
            raise TicketAccessDeniedError()
        logger.info("Breakdown %s advanced to %s", ticket_id, stage.value)
        await self._publish()
        return ticket

    async def _apply_admin_update(
        self,
        ticket_id: str,
        updates: Mapping[str, Any],
        media_fields: tuple[str, ...],
    ) -> tuple[Ticket, list[str | None]]:
        """Write ``updates`` while the media columns still hold the references read just before.

        Returns the updated ticket and the media references it replaced.
        """

        for _ in range(_ADMIN_EDIT_ATTEMPTS):
            current = await self._store.find_one(TicketFilter(ticket_id=ticket_id))
            if current is None:
                raise TicketNotFoundError(f"Breakdown {ticket_id} not found")
            stored = ticket_to_fields(current)
            previous = tuple((field, stored[field]) for field in media_fields)
            updated = await self._store.find_one_and_update(TicketFilter(ticket_id=ticket_id, equals=previous), updates)
            if updated is not None:
                return updated, [reference for _, reference in previous]
            logger.info("Breakdown %s changed during an admin edit; retrying", ticket_id)
        raise TicketServiceError(f"Breakdown {ticket_id} kept changing during the edit")

    def _validate_code(self, stage: Stage, code: str | None) -> str:
        code = _require(code, TicketStateMachine.code_field(stage) or "code")
        try:
            return self._allowlists.validate(stage, code)
        except AllowlistValidationError as exc:
            raise InvalidCodeError(str(exc)) from exc

    @staticmethod
    def _parse_status(status: ApprovalStatus | str) -> ApprovalStatus:
        try:
            return ApprovalStatus(status)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in ApprovalStatus)
            raise TicketValidationError(f"Invalid status {status!r}. Allowed: {allowed}") from exc

    async def _store_media(self, upload: MediaUpload | None) -> str | None:
        try:
            return await self._attachments.store(upload)
        except InvalidAttachmentError as exc:
            raise TicketValidationError(str(exc)) from exc

    async def _publish(self) -> None:
        if self._mirror is None:
            return
        if self._sync_inline:
            await self._mirror.sync()
        else:
            self._mirror.schedule()
