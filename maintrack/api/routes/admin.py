from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, File, Form, UploadFile, status
from pydantic import BaseModel

from maintrack.api.routes.breakdowns import BreakdownResponse, read_upload, to_http_error
from maintrack.dependencies.auth import AdminUser
from maintrack.dependencies.tickets import TicketServiceDep
from maintrack.tickets.service import TicketServiceError

router = APIRouter(prefix="/api/admin", tags=["admin"])


class AdminProfileResponse(BaseModel):
    id: str
    username: str
    role: str


class SyncResponse(BaseModel):
    synced: bool


@router.get("/me", response_model=AdminProfileResponse)
async def who_am_i(admin: AdminUser) -> AdminProfileResponse:
    return AdminProfileResponse(id=admin.id, username=admin.username, role=admin.role)


@router.get("/breakdowns", response_model=list[BreakdownResponse])
async def list_all_breakdowns(service: TicketServiceDep, _: AdminUser) -> list[BreakdownResponse]:
    tickets = await service.list_tickets()
    return [BreakdownResponse.from_ticket(ticket) for ticket in tickets]


@router.put("/breakdowns/{ticket_id}", response_model=BreakdownResponse)
async def edit_breakdown(
    ticket_id: str,
    service: TicketServiceDep,
    admin: AdminUser,
    machine_id: Annotated[str | None, Form(alias="machineId")] = None,
    machine_family: Annotated[str | None, Form(alias="machineFamily")] = None,
    breakdown_type: Annotated[str | None, Form(alias="breakdownType")] = None,
    production_stopped: Annotated[bool | None, Form(alias="productionStopped")] = None,
    problem_description: Annotated[str | None, Form(alias="problemDescription")] = None,
    temporary_maintenance_id: Annotated[str | None, Form(alias="temporaryMaintenanceId")] = None,
    corrective_action: Annotated[str | None, Form(alias="correctiveAction")] = None,
    spare_used: Annotated[str | None, Form(alias="spareUsed")] = None,
    closure_maintenance_id: Annotated[str | None, Form(alias="closureMaintenanceId")] = None,
    analysis_report: Annotated[str | None, Form(alias="analysisReport")] = None,
    approval_id: Annotated[str | None, Form(alias="approvalId")] = None,
    approval_status: Annotated[str | None, Form(alias="status")] = None,
    open_media: Annotated[UploadFile | None, File(alias="openMedia")] = None,
    closure_media: Annotated[UploadFile | None, File(alias="closureMedia")] = None,
) -> BreakdownResponse:
    submitted: dict[str, Any] = {
        "machine_id": machine_id,
        "machine_family": machine_family,
        "breakdown_type": breakdown_type,
        "production_stopped": production_stopped,
        "problem_description": problem_description,
        "temporary_maintenance_id": temporary_maintenance_id,
        "corrective_action": corrective_action,
        "spare_used": spare_used,
        "closure_maintenance_id": closure_maintenance_id,
        "analysis_report": analysis_report,
        "approval_id": approval_id,
        "approval_status": approval_status,
    }
    changes = {field: value for field, value in submitted.items() if value is not None}
    try:
        ticket = await service.admin_edit(
            ticket_id,
            changes,
            actor=admin.username,
            open_media=await read_upload(open_media),
            closure_media=await read_upload(closure_media),
        )
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc
    return BreakdownResponse.from_ticket(ticket)


@router.delete("/breakdowns/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_breakdown(ticket_id: str, service: TicketServiceDep, admin: AdminUser) -> None:
    try:
        await service.admin_delete(ticket_id, actor=admin.username)
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc


@router.post("/sync", response_model=SyncResponse)
async def sync_mirror(service: TicketServiceDep, _: AdminUser) -> SyncResponse:
    return SyncResponse(synced=await service.resync())
