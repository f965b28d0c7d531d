from __future__ import annotations

import asyncio

import pytest

from maintrack.security.allowlist import AllowlistConfig
from maintrack.tickets.attachments import AttachmentManager, LocalBlobStore, MediaUpload
from maintrack.tickets.mirror import MirrorSync
from maintrack.tickets.models import Ticket
from maintrack.tickets.service import (
    ACCESS_DENIED_MESSAGE,
    InvalidCodeError,
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketService,
    TicketValidationError,
    generate_ticket_id,
)
from maintrack.tickets.state import ApprovalStatus, Stage
from maintrack.tickets.store import TicketFilter, TicketStore


async def _open(service: TicketService, owner: str = "U1", **kwargs):
    return await service.open_ticket(
        owner_id=owner,
        machine_id=kwargs.pop("machine_id", "M-12"),
        problem_description=kwargs.pop("problem_description", "Conveyor belt snapped"),
        production_stopped=kwargs.pop("production_stopped", True),
        **kwargs,
    )


def _blob_path(blob_store: LocalBlobStore, reference: str):
    return blob_store.resolve(reference.rsplit("/", 1)[-1])


def test_generated_ids_are_prefixed_and_distinct():
    first, second = generate_ticket_id(), generate_ticket_id()
    assert first.startswith("BD-")
    assert first != second


@pytest.mark.asyncio
async def test_full_lifecycle_scenario(service: TicketService, store: TicketStore, sink):
    ticket = await _open(service)
    assert ticket.timestamps.open is not None
    assert ticket.next_stage is Stage.TEMPORARY

    temporary = await service.advance_temporary(
        ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001", corrective_action="replaced belt"
    )
    assert temporary.temporary_form is not None
    assert temporary.temporary_form.is_approved is True
    assert temporary.timestamps.temporary >= temporary.timestamps.open

    with pytest.raises(InvalidCodeError):
        await service.advance_closure(ticket.ticket_id, owner_id="U1", maintenance_id="BAD-CODE", analysis_report="...")
    unchanged = await store.find_one(TicketFilter(ticket_id=ticket.ticket_id))
    assert unchanged is not None
    assert unchanged.timestamps.closure is None
    assert unchanged.closure_form is None

    closure = await service.advance_closure(
        ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001", analysis_report="root cause X"
    )
    assert closure.closure_form is not None
    assert closure.closure_form.is_approved is True
    assert closure.timestamps.closure >= closure.timestamps.temporary

    approval = await service.advance_approval(
        ticket.ticket_id, owner_id="U1", approval_id="APPR-2023-001", status="Approved"
    )
    assert approval.approval_form is not None
    assert approval.approval_form.status is ApprovalStatus.APPROVED
    assert approval.approval_form.is_approved is True
    assert approval.completed_stages() == {Stage.OPEN, Stage.TEMPORARY, Stage.CLOSURE, Stage.APPROVAL}
    assert approval.next_stage is None

    # open + three successful advances; the rejected closure never synced
    assert len(sink.calls) == 4
    assert sink.calls[-1][0]["Approval Status"] == "Approved"


@pytest.mark.asyncio
async def test_invalid_codes_mutate_nothing(service: TicketService, store: TicketStore, sink):
    ticket = await _open(service)
    before = await store.find_one(TicketFilter(ticket_id=ticket.ticket_id))

    with pytest.raises(InvalidCodeError):
        await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001")

    after = await store.find_one(TicketFilter(ticket_id=ticket.ticket_id))
    assert after == before
    assert len(sink.calls) == 1


@pytest.mark.asyncio
async def test_closure_before_temporary_is_denied_even_for_owner(service: TicketService):
    ticket = await _open(service)

    with pytest.raises(TicketAccessDeniedError):
        await service.advance_closure(ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001")
    with pytest.raises(TicketAccessDeniedError):
        await service.advance_approval(
            ticket.ticket_id, owner_id="U1", approval_id="APPR-2023-001", status=ApprovalStatus.APPROVED
        )


@pytest.mark.asyncio
async def test_non_owner_and_missing_ticket_get_the_same_signal(service: TicketService):
    ticket = await _open(service)

    with pytest.raises(TicketAccessDeniedError) as foreign:
        await service.advance_temporary(ticket.ticket_id, owner_id="U2", maintenance_id="MNT-2023-001")
    with pytest.raises(TicketAccessDeniedError) as missing:
        await service.advance_temporary("BD-NOPE", owner_id="U1", maintenance_id="MNT-2023-001")

    assert str(foreign.value) == str(missing.value) == ACCESS_DENIED_MESSAGE


@pytest.mark.asyncio
async def test_completed_stage_cannot_be_resubmitted(service: TicketService):
    ticket = await _open(service)
    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")

    with pytest.raises(TicketAccessDeniedError):
        await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-002")

    current = await service.get_ticket(ticket.ticket_id)
    assert current.temporary_form.maintenance_id == "MNT-2023-001"


@pytest.mark.asyncio
async def test_invalid_status_and_missing_fields_are_validation_errors(service: TicketService):
    ticket = await _open(service)
    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")
    await service.advance_closure(ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001")

    with pytest.raises(TicketValidationError):
        await service.advance_approval(ticket.ticket_id, owner_id="U1", approval_id="APPR-2023-001", status="Maybe")
    with pytest.raises(TicketValidationError):
        await _open(service, owner="  ")
    with pytest.raises(TicketValidationError):
        await _open(service, machine_id="")


@pytest.mark.asyncio
async def test_open_and_closure_media_are_stored(service: TicketService, blob_store: LocalBlobStore):
    ticket = await _open(service, media=MediaUpload(filename="belt.JPG", content=b"jpeg"))
    assert ticket.open_form.media_url.startswith("/api/files/")
    assert _blob_path(blob_store, ticket.open_form.media_url).read_bytes() == b"jpeg"

    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")
    closed = await service.advance_closure(
        ticket.ticket_id,
        owner_id="U1",
        maintenance_id="CLS-2023-001",
        media=MediaUpload(filename="report.pdf", content=b"%PDF-"),
    )
    assert closed.closure_form.media_url.endswith(".pdf")


@pytest.mark.asyncio
async def test_rejected_closure_discards_uploaded_media(service: TicketService, blob_store: LocalBlobStore):
    ticket = await _open(service)

    with pytest.raises(TicketAccessDeniedError):
        await service.advance_closure(
            ticket.ticket_id,
            owner_id="U1",
            maintenance_id="CLS-2023-001",
            media=MediaUpload(filename="report.pdf", content=b"%PDF-"),
        )

    assert list(blob_store.root.glob("*")) == []


@pytest.mark.asyncio
async def test_disallowed_media_is_a_validation_error(service: TicketService):
    with pytest.raises(TicketValidationError):
        await _open(service, media=MediaUpload(filename="script.exe", content=b"MZ"))


@pytest.mark.asyncio
async def test_admin_edit_bypasses_gating_and_restamps(service: TicketService):
    ticket = await _open(service)

    edited = await service.admin_edit(
        ticket.ticket_id,
        {"closure_maintenance_id": "NOT-LISTED", "analysis_report": "entered late"},
        actor="superadmin",
    )

    assert edited.timestamps.temporary is None
    assert edited.timestamps.closure is not None
    assert edited.closure_form.analysis_report == "entered late"
    assert edited.closure_form.is_approved is False

    relisted = await service.admin_edit(ticket.ticket_id, {"closure_maintenance_id": "CLS-2023-002"}, actor="superadmin")
    assert relisted.closure_form.is_approved is True
    assert relisted.timestamps.closure >= edited.timestamps.closure


@pytest.mark.asyncio
async def test_admin_edit_without_code_keeps_timestamps(service: TicketService):
    ticket = await _open(service)

    edited = await service.admin_edit(ticket.ticket_id, {"problem_description": "Motor overheated"}, actor="admin")

    assert edited.open_form.problem_description == "Motor overheated"
    assert edited.timestamps.open == ticket.timestamps.open
    assert edited.completed_stages() == {Stage.OPEN}


@pytest.mark.asyncio
async def test_admin_edit_rejects_unknown_fields_and_missing_tickets(service: TicketService):
    ticket = await _open(service)

    with pytest.raises(TicketValidationError):
        await service.admin_edit(ticket.ticket_id, {"owner_id": "U2"}, actor="admin")
    with pytest.raises(TicketValidationError):
        await service.admin_edit(ticket.ticket_id, {}, actor="admin")
    with pytest.raises(TicketNotFoundError):
        await service.admin_edit("BD-NOPE", {"spare_used": "belt"}, actor="admin")


@pytest.mark.asyncio
async def test_admin_edit_retires_replaced_media(service: TicketService, blob_store: LocalBlobStore):
    ticket = await _open(service, media=MediaUpload(filename="first.png", content=b"one"))
    old_path = _blob_path(blob_store, ticket.open_form.media_url)

    edited = await service.admin_edit(
        ticket.ticket_id, {}, actor="admin", open_media=MediaUpload(filename="second.png", content=b"two")
    )

    assert not old_path.exists()
    assert _blob_path(blob_store, edited.open_form.media_url).read_bytes() == b"two"


@pytest.mark.asyncio
async def test_admin_delete_removes_ticket_and_media(service: TicketService, blob_store: LocalBlobStore):
    ticket = await _open(service, media=MediaUpload(filename="belt.jpg", content=b"jpeg"))
    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")
    closed = await service.advance_closure(
        ticket.ticket_id,
        owner_id="U1",
        maintenance_id="CLS-2023-001",
        media=MediaUpload(filename="report.pdf", content=b"%PDF-"),
    )
    open_path = _blob_path(blob_store, closed.open_form.media_url)
    closure_path = _blob_path(blob_store, closed.closure_form.media_url)
    closure_path.unlink()

    await service.admin_delete(ticket.ticket_id, actor="admin")

    assert not open_path.exists()
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(ticket.ticket_id)
    with pytest.raises(TicketNotFoundError):
        await service.admin_delete(ticket.ticket_id, actor="admin")


@pytest.mark.asyncio
async def test_list_tickets_scopes_to_owner(service: TicketService):
    await _open(service, owner="U1")
    await _open(service, owner="U2")

    assert [ticket.owner_id for ticket in await service.list_tickets(owner_id="U1")] == ["U1"]
    assert len(await service.list_tickets()) == 2


@pytest.mark.asyncio
async def test_sync_failure_never_fails_the_operation(
    store: TicketStore, attachments: AttachmentManager, failing_sink
):
    service = TicketService(
        store,
        allowlists=AllowlistConfig.default(),
        attachments=attachments,
        mirror=MirrorSync(store, failing_sink),
        sync_inline=True,
    )

    ticket = await _open(service)

    assert await store.find_one(TicketFilter(ticket_id=ticket.ticket_id)) is not None
    assert await service.resync() is False


@pytest.mark.asyncio
async def test_background_sync_is_scheduled_after_commit(
    store: TicketStore, attachments: AttachmentManager, sink
):
    service = TicketService(
        store,
        allowlists=AllowlistConfig.default(),
        attachments=attachments,
        mirror=MirrorSync(store, sink),
    )

    ticket = await _open(service)
    await service.drain_mirror()

    assert len(sink.calls) == 1
    assert sink.calls[0][0]["Breakdown ID"] == ticket.ticket_id


@pytest.mark.asyncio
async def test_resync_without_mirror_reports_false(store: TicketStore, attachments: AttachmentManager):
    service = TicketService(store, allowlists=AllowlistConfig.default(), attachments=attachments)
    assert await service.resync() is False


@pytest.mark.asyncio
async def test_codes_are_stored_in_allowlisted_form(service: TicketService, sink):
    ticket = await _open(service)

    temporary = await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id=" mnt-2023-001 ")

    assert temporary.temporary_form.maintenance_id == "MNT-2023-001"
    assert temporary.temporary_form.is_approved is True
    assert sink.calls[-1][0]["Temporary Maintenance ID"] == "MNT-2023-001"

    edited = await service.admin_edit(ticket.ticket_id, {"closure_maintenance_id": "cls-2023-002"}, actor="admin")
    assert edited.closure_form.maintenance_id == "CLS-2023-002"
    assert edited.closure_form.is_approved is True


@pytest.mark.asyncio
async def test_concurrent_advances_let_exactly_one_through(service: TicketService):
    ticket = await _open(service)

    results = await asyncio.gather(
        *(
            service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id=code)
            for code in ("MNT-2023-001", "MNT-2023-002", "MNT-2023-003")
        ),
        return_exceptions=True,
    )

    winners = [result for result in results if isinstance(result, Ticket)]
    losers = [result for result in results if isinstance(result, TicketAccessDeniedError)]
    assert len(winners) == 1
    assert len(losers) == 2
    stored = await service.get_ticket(ticket.ticket_id)
    assert stored.temporary_form.maintenance_id == winners[0].temporary_form.maintenance_id


@pytest.mark.asyncio
async def test_later_stages_hide_ownership_from_other_users(service: TicketService):
    ticket = await _open(service)
    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")

    with pytest.raises(TicketAccessDeniedError) as foreign_closure:
        await service.advance_closure(ticket.ticket_id, owner_id="U2", maintenance_id="CLS-2023-001")
    with pytest.raises(TicketAccessDeniedError) as missing_closure:
        await service.advance_closure("BD-NOPE", owner_id="U2", maintenance_id="CLS-2023-001")
    assert str(foreign_closure.value) == str(missing_closure.value) == ACCESS_DENIED_MESSAGE

    await service.advance_closure(ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001")

    with pytest.raises(TicketAccessDeniedError) as foreign_approval:
        await service.advance_approval(ticket.ticket_id, owner_id="U2", approval_id="APPR-2023-001", status="Approved")
    with pytest.raises(TicketAccessDeniedError) as missing_approval:
        await service.advance_approval("BD-NOPE", owner_id="U2", approval_id="APPR-2023-001", status="Approved")
    assert str(foreign_approval.value) == str(missing_approval.value) == ACCESS_DENIED_MESSAGE

    stored = await service.get_ticket(ticket.ticket_id)
    assert stored.approval_form is None


@pytest.mark.asyncio
async def test_invalid_approval_code_mutates_nothing(service: TicketService, store: TicketStore, sink):
    ticket = await _open(service)
    await service.advance_temporary(ticket.ticket_id, owner_id="U1", maintenance_id="MNT-2023-001")
    await service.advance_closure(ticket.ticket_id, owner_id="U1", maintenance_id="CLS-2023-001")
    before = await store.find_one(TicketFilter(ticket_id=ticket.ticket_id))
    synced = len(sink.calls)

    with pytest.raises(InvalidCodeError):
        await service.advance_approval(ticket.ticket_id, owner_id="U1", approval_id="MNT-2023-001", status="Approved")

    after = await store.find_one(TicketFilter(ticket_id=ticket.ticket_id))
    assert after == before
    assert after.timestamps.approval is None
    assert len(sink.calls) == synced


@pytest.mark.asyncio
async def test_admin_edit_retires_media_replaced_by_a_concurrent_edit(
    service: TicketService, store: TicketStore, attachments: AttachmentManager, blob_store: LocalBlobStore, monkeypatch
):
    ticket = await _open(service, media=MediaUpload(filename="first.png", content=b"one"))
    first_reference = ticket.open_form.media_url
    racing_reference = await attachments.store(MediaUpload(filename="racing.png", content=b"race"))
    read_ticket = store.find_one
    raced = False

    async def find_one_then_race(match: TicketFilter):
        nonlocal raced
        found = await read_ticket(match)
        if not raced:
            raced = True
            await store.find_one_and_update(
                TicketFilter(ticket_id=ticket.ticket_id), {"open_media_url": racing_reference}
            )
        return found

    monkeypatch.setattr(store, "find_one", find_one_then_race)

    edited = await service.admin_edit(
        ticket.ticket_id, {}, actor="admin", open_media=MediaUpload(filename="final.png", content=b"final")
    )

    assert _blob_path(blob_store, edited.open_form.media_url).read_bytes() == b"final"
    assert not _blob_path(blob_store, racing_reference).exists()
    # the competing edit owns the cleanup of the first upload
    assert _blob_path(blob_store, first_reference).exists()
