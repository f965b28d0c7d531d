from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from maintrack.tickets.attachments import LocalBlobStore
from maintrack.tickets.service import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_blob_store(request: Request) -> LocalBlobStore:
    blobs = getattr(request.app.state, "blob_store", None)
    if blobs is None:
        raise HTTPException(status_code=503, detail="File storage is not configured")
    return blobs


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
BlobStoreDep = Annotated[LocalBlobStore, Depends(get_blob_store)]
