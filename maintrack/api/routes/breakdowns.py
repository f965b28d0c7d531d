from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from maintrack.dependencies.tickets import TicketServiceDep
from maintrack.tickets.attachments import MediaUpload
from maintrack.tickets.models import Ticket
from maintrack.tickets.service import (
    TicketAccessDeniedError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from maintrack.tickets.state import ApprovalStatus, Stage

router = APIRouter(prefix="/api/breakdowns", tags=["breakdowns"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TemporaryRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    maintenance_id: str = Field(..., min_length=1)
    corrective_action: str | None = None
    spare_used: str | None = None


class ApprovalRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    approval_id: str = Field(..., min_length=1)
    status: str


class OpenResponse(CamelModel):
    breakdown_id: str


class TimestampsResponse(CamelModel):
    open: datetime
    temporary: datetime | None = None
    closure: datetime | None = None
    approval: datetime | None = None


class OpenFormResponse(CamelModel):
    machine_id: str
    machine_family: str | None = None
    breakdown_type: str | None = None
    production_stopped: bool
    problem_description: str
    media_url: str | None = None


class TemporaryFormResponse(CamelModel):
    maintenance_id: str | None = None
    corrective_action: str | None = None
    spare_used: str | None = None
    is_approved: bool


class ClosureFormResponse(CamelModel):
    maintenance_id: str | None = None
    analysis_report: str | None = None
    media_url: str | None = None
    is_approved: bool


class ApprovalFormResponse(CamelModel):
    approval_id: str | None = None
    status: ApprovalStatus | None = None
    is_approved: bool


class BreakdownResponse(CamelModel):
    breakdown_id: str
    user_id: str
    timestamps: TimestampsResponse
    open_form: OpenFormResponse
    temporary_form: TemporaryFormResponse | None = None
    closure_form: ClosureFormResponse | None = None
    approval_form: ApprovalFormResponse | None = None
    next_stage: Stage | None = None

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "BreakdownResponse":
        stamps = ticket.timestamps
        open_form = ticket.open_form
        temporary = ticket.temporary_form
        closure = ticket.closure_form
        approval = ticket.approval_form
        return cls(
            breakdown_id=ticket.ticket_id,
            user_id=ticket.owner_id,
            timestamps=TimestampsResponse(
                open=stamps.open,
                temporary=stamps.temporary,
                closure=stamps.closure,
                approval=stamps.approval,
            ),
            open_form=OpenFormResponse(
                machine_id=open_form.machine_id,
                machine_family=open_form.machine_family,
                breakdown_type=open_form.breakdown_type,
                production_stopped=open_form.production_stopped,
                problem_description=open_form.problem_description,
                media_url=open_form.media_url,
            ),
            temporary_form=None
            if temporary is None
            else TemporaryFormResponse(
                maintenance_id=temporary.maintenance_id,
                corrective_action=temporary.corrective_action,
                spare_used=temporary.spare_used,
                is_approved=temporary.is_approved,
            ),
            closure_form=None
            if closure is None
            else ClosureFormResponse(
                maintenance_id=closure.maintenance_id,
                analysis_report=closure.analysis_report,
                media_url=closure.media_url,
                is_approved=closure.is_approved,
            ),
            approval_form=None
            if approval is None
            else ApprovalFormResponse(
                approval_id=approval.approval_id,
                status=approval.status,
                is_approved=approval.is_approved,
            ),
            next_stage=ticket.next_stage,
        )


def to_http_error(exc: TicketServiceError) -> HTTPException:
    if isinstance(exc, TicketValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TicketAccessDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, TicketNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal server error")


async def read_upload(file: UploadFile | None) -> MediaUpload | None:
    """Load a multipart file into memory; an empty file field counts as absent."""

    if file is None or not file.filename:
        return None
    try:
        content = await file.read()
    finally:
        await file.close()
    return MediaUpload(filename=file.filename, content=content)


@router.post("/open", response_model=OpenResponse, status_code=status.HTTP_201_CREATED)
async def open_breakdown(
    service: TicketServiceDep,
    user_id: Annotated[str, Form(alias="userId")],
    machine_id: Annotated[str, Form(alias="machineId")],
    problem_description: Annotated[str, Form(alias="problemDescription")],
    machine_family: Annotated[str | None, Form(alias="machineFamily")] = None,
    breakdown_type: Annotated[str | None, Form(alias="breakdownType")] = None,
    production_stopped: Annotated[bool, Form(alias="productionStopped")] = False,
    media: Annotated[UploadFile | None, File()] = None,
) -> OpenResponse:
    try:
        ticket = await service.open_ticket(
            owner_id=user_id,
            machine_id=machine_id,
            problem_description=problem_description,
            machine_family=machine_family,
            breakdown_type=breakdown_type,
            production_stopped=production_stopped,
            media=await read_upload(media),
        )
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc
    return OpenResponse(breakdown_id=ticket.ticket_id)


@router.put("/{ticket_id}/temporary", response_model=BreakdownResponse)
async def advance_temporary(ticket_id: str, payload: TemporaryRequest, service: TicketServiceDep) -> BreakdownResponse:
    try:
        ticket = await service.advance_temporary(
            ticket_id,
            owner_id=payload.user_id,
            maintenance_id=payload.maintenance_id,
            corrective_action=payload.corrective_action,
            spare_used=payload.spare_used,
        )
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc
    return BreakdownResponse.from_ticket(ticket)


@router.put("/{ticket_id}/closure", response_model=BreakdownResponse)
async def advance_closure(
    ticket_id: str,
    service: TicketServiceDep,
    user_id: Annotated[str, Form(alias="userId")],
    maintenance_id: Annotated[str, Form(alias="maintenanceId")],
    analysis_report: Annotated[str | None, Form(alias="analysisReport")] = None,
    media: Annotated[UploadFile | None, File()] = None,
) -> BreakdownResponse:
    try:
        ticket = await service.advance_closure(
            ticket_id,
            owner_id=user_id,
            maintenance_id=maintenance_id,
            analysis_report=analysis_report,
            media=await read_upload(media),
        )
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc
    return BreakdownResponse.from_ticket(ticket)


@router.put("/{ticket_id}/approval", response_model=BreakdownResponse)
async def advance_approval(ticket_id: str, payload: ApprovalRequest, service: TicketServiceDep) -> BreakdownResponse:
    try:
        ticket = await service.advance_approval(
            ticket_id,
            owner_id=payload.user_id,
            approval_id=payload.approval_id,
            status=payload.status,
        )
    except TicketServiceError as exc:
        raise to_http_error(exc) from exc
    return BreakdownResponse.from_ticket(ticket)


@router.get("/single/{ticket_id}", response_model=BreakdownResponse)
async def get_breakdown(ticket_id: str, service: TicketServiceDep) -> BreakdownResponse:
    try:
        ticket = await service.get_ticket(ticket_id)
    except TicketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return BreakdownResponse.from_ticket(ticket)


@router.get("/{user_id}", response_model=list[BreakdownResponse])
async def list_user_breakdowns(user_id: str, service: TicketServiceDep) -> list[BreakdownResponse]:
    tickets = await service.list_tickets(owner_id=user_id)
    return [BreakdownResponse.from_ticket(ticket) for ticket in tickets]
