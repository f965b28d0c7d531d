"""Full-replace replication of the ticket collection to a reporting sheet."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol, Sequence

import httpx
from google.auth.credentials import Credentials
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from opentelemetry import trace

from .models import Ticket
from .store import TicketStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MirrorRow = dict[str, str]

MIRROR_HEADERS: tuple[str, ...] = (
    "Breakdown ID",
    "User ID",
    "Open Timestamp",
    "Open Machine ID",
    "Open Machine Family",
    "Open Breakdown Type",
    "Open Production Stopped",
    "Open Problem Description",
    "Open Media",
    "Temporary Timestamp",
    "Temporary Maintenance ID",
    "Temporary Corrective Action",
    "Temporary Spare Used",
    "Temporary Approved",
    "Closure Timestamp",
    "Closure Maintenance ID",
    "Closure Analysis Report",
    "Closure Media",
    "Closure Approved",
    "Approval Timestamp",
    "Approval ID",
    "Approval Status",
)


class MirrorSink(Protocol):
    async def replace_all(self, rows: Sequence[MirrorRow]) -> None:
        ...


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _yes_no(value: bool | None) -> str:
    if value is None:
        return ""
    return "Yes" if value else "No"


def ticket_to_row(ticket: Ticket) -> MirrorRow:
    """Flatten one ticket into a sheet row keyed by ``MIRROR_HEADERS``."""

    stamps = ticket.timestamps
    open_form = ticket.open_form
    temporary = ticket.temporary_form
    closure = ticket.closure_form
    approval = ticket.approval_form
    values = (
        ticket.ticket_id,
        ticket.owner_id,
        format_timestamp(stamps.open),
        open_form.machine_id,
        open_form.machine_family or "",
        open_form.breakdown_type or "",
        _yes_no(open_form.production_stopped),
        open_form.problem_description,
        open_form.media_url or "",
        format_timestamp(stamps.temporary),
        (temporary.maintenance_id or "") if temporary else "",
        (temporary.corrective_action or "") if temporary else "",
        (temporary.spare_used or "") if temporary else "",
        _yes_no(temporary.is_approved) if temporary else "",
        format_timestamp(stamps.closure),
        (closure.maintenance_id or "") if closure else "",
        (closure.analysis_report or "") if closure else "",
        (closure.media_url or "") if closure else "",
        _yes_no(closure.is_approved) if closure else "",
        format_timestamp(stamps.approval),
        (approval.approval_id or "") if approval else "",
        approval.status.value if approval and approval.status else "Pending",
    )
    return dict(zip(MIRROR_HEADERS, values))


SHEETS_SCOPES: tuple[str, ...] = ("https://www.googleapis.com/auth/spreadsheets",)
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"


def service_account_credentials(
    email: str,
    private_key: str,
    *,
    token_uri: str = GOOGLE_TOKEN_URI,
) -> service_account.Credentials:
    """Build Sheets-scoped service account credentials.

    ``private_key`` may carry literal ``\\n`` sequences, as it does when read
    from a single-line environment variable.
    """

    info = {
        "type": "service_account",
        "client_email": email,
        "private_key": private_key.replace("\\n", "\n"),
        "token_uri": token_uri,
    }
    return service_account.Credentials.from_service_account_info(info, scopes=list(SHEETS_SCOPES))


class GoogleSheetsMirrorSink:
    """Replace the contents of a Google Sheets range through the Sheets v4 REST API."""

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        credentials: Credentials,
        sheet_range: str = "Sheet1",
        base_url: str = "https://sheets.googleapis.com/v4",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._spreadsheet_id = spreadsheet_id
        self._credentials = credentials
        self._range = sheet_range
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _access_token(self) -> str:
        if not self._credentials.valid:
            # google-auth refreshes synchronously
            await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
        return self._credentials.token

    async def replace_all(self, rows: Sequence[MirrorRow]) -> None:
        values: list[list[str]] = [list(MIRROR_HEADERS)]
        values.extend([row.get(header, "") for header in MIRROR_HEADERS] for row in rows)
        values_url = f"/spreadsheets/{self._spreadsheet_id}/values/{self._range}"
        token = await self._access_token()
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.post(f"{values_url}:clear", json={})
            response.raise_for_status()
            response = await client.put(
                values_url,
                params={"valueInputOption": "RAW"},
                json={"range": self._range, "majorDimension": "ROWS", "values": values},
            )
            response.raise_for_status()


class MirrorSync:
    """Best-effort republishing of every ticket after each mutation.

    Each run clears the sink and rewrites all rows. Failures are logged and
    dropped; the next mutation triggers a fresh full sync.
    """

    def __init__(self, store: TicketStore, sink: MirrorSink) -> None:
        self._store = store
        self._sink = sink
        self._pending: set[asyncio.Task[bool]] = set()

    async def sync(self) -> bool:
        with tracer.start_as_current_span("mirror.sync") as span:
            try:
                tickets = await self._store.find_many()
                rows = [ticket_to_row(ticket) for ticket in tickets]
                await self._sink.replace_all(rows)
            except Exception as exc:
                span.record_exception(exc)
                logger.error("Mirror sync failed: %s", exc)
                return False
            span.set_attribute("mirror.rows", len(rows))
        logger.info("Synced %d breakdowns to the mirror", len(rows))
        return True

    def schedule(self) -> asyncio.Task[bool]:
        """Dispatch a sync without waiting for it."""

        task = asyncio.create_task(self.sync())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled sync to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
