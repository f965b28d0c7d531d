import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from maintrack.api.routes import admin, breakdowns, files, ping
from maintrack.core.config import Settings, get_settings
from maintrack.core.logging import configure_logging, init_tracer, shutdown_tracer
from maintrack.security.allowlist import AllowlistConfig
from maintrack.tickets.attachments import AttachmentManager, LocalBlobStore
from maintrack.tickets.mirror import GoogleSheetsMirrorSink, MirrorSync, service_account_credentials
from maintrack.tickets.service import TicketService
from maintrack.tickets.store import TicketStore, TicketStoreError

logger = logging.getLogger(__name__)


def _to_async_dsn(dsn: str) -> str:
    """Ensure the database URL uses an async driver."""

    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    if dsn.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + dsn[len("sqlite:///") :]
    return dsn


def build_ticket_service(
    settings: Settings,
    store: TicketStore,
    blobs: LocalBlobStore,
) -> TicketService:
    """Wire the lifecycle service from settings and already created collaborators."""

    attachments = AttachmentManager(
        blobs,
        allowed_extensions=settings.allowed_extensions_list,
        max_size=settings.max_upload_size,
    )
    mirror = None
    if settings.mirror_enabled:
        try:
            credentials = service_account_credentials(
                settings.google_service_account_email or "",
                settings.google_private_key or "",
                token_uri=settings.google_token_uri,
            )
        except ValueError:
            logger.exception("Google service account credentials are invalid; sync disabled")
        else:
            sink = GoogleSheetsMirrorSink(
                spreadsheet_id=settings.sheets_spreadsheet_id or "",
                credentials=credentials,
                sheet_range=settings.sheets_range,
                base_url=settings.sheets_api_base_url,
                timeout=settings.sheets_timeout_seconds,
            )
            mirror = MirrorSync(store, sink)
    else:
        logger.info("Google Sheets mirror is not configured; sync disabled")
    return TicketService(
        store,
        allowlists=AllowlistConfig.from_settings(settings),
        attachments=attachments,
        mirror=mirror,
        sync_inline=settings.mirror_sync_inline,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app_logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = app_logger
    app.state.tracer_provider = tracer_provider
    app.state.blob_store = LocalBlobStore(Path(settings.upload_dir), public_prefix=settings.media_url_prefix)
    app.state.ticket_service = None
    db_engine = None
    service: TicketService | None = None
    try:
        db_engine = create_async_engine(_to_async_dsn(settings.database_url), future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        store = TicketStore(session_factory, engine=db_engine)
        service = build_ticket_service(settings, store, app.state.blob_store)
        await service.ensure_schema()
        app.state.ticket_service = service
    except Exception:  # pragma: no cover - service initialisation best effort
        app_logger.exception("Ticket service could not be initialised")
        service = None
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if service is not None:
            await service.drain_mirror()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


async def _storage_failure_handler(request: Request, exc: TicketStoreError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_exception_handler(TicketStoreError, _storage_failure_handler)
    app.include_router(ping.router)
    app.include_router(breakdowns.router)
    app.include_router(admin.router)
    app.include_router(files.router)
    return app


app = create_app()
