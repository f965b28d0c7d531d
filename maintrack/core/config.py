from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from maintrack.security.allowlist import DEFAULT_APPROVAL_CODES, DEFAULT_CLOSURE_CODES, DEFAULT_MAINTENANCE_CODES


class AdminAccount(BaseModel):
    """Administrator allowed to use the privileged endpoints."""

    admin_id: str
    username: str
    password: str
    full_name: str = ""
    role: str = "maintenance"
    is_active: bool = True


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    app_name: str = Field(default="Maintrack API")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Database configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./maintrack.db")

    # Attachments
    upload_dir: str = Field(default="./uploads")
    media_url_prefix: str = Field(default="/api/files")
    max_upload_size: int = Field(default=10 * 1024 * 1024)
    allowed_media_extensions: str = Field(default="jpg,jpeg,png,gif,webp,mp4,mov,pdf")

    # Stage allowlists (comma separated)
    maintenance_codes: str = Field(default=",".join(DEFAULT_MAINTENANCE_CODES))
    closure_codes: str = Field(default=",".join(DEFAULT_CLOSURE_CODES))
    approval_codes: str = Field(default=",".join(DEFAULT_APPROVAL_CODES))

    # Admin gate; override with a JSON list in ADMIN_ACCOUNTS
    admin_accounts: list[AdminAccount] = Field(
        default_factory=lambda: [
            AdminAccount(
                admin_id="ADMIN-001",
                username="superadmin",
                password="admin123",
                full_name="Super Admin",
                role="superadmin",
            ),
            AdminAccount(
                admin_id="ADMIN-002",
                username="maintenance_admin",
                password="maint456",
                full_name="Maintenance Admin",
                role="maintenance",
            ),
        ]
    )

    # Reporting mirror (Google Sheets)
    sheets_spreadsheet_id: str | None = Field(default=None)
    google_service_account_email: str | None = Field(default=None)
    google_private_key: str | None = Field(default=None)
    google_token_uri: str = Field(default="https://oauth2.googleapis.com/token")
    sheets_range: str = Field(default="Sheet1")
    sheets_api_base_url: str = Field(default="https://sheets.googleapis.com/v4")
    sheets_timeout_seconds: float = Field(default=10.0)
    mirror_sync_inline: bool = Field(default=False)

    # Observability configuration
    otel_enabled: bool = Field(default=False)
    otel_service_name: str = Field(default="maintrack-api")
    otel_exporter_otlp_endpoint: str | None = Field(default=None)
    otel_exporter_otlp_headers: str | None = Field(default=None)

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def mirror_enabled(self) -> bool:
        return bool(self.sheets_spreadsheet_id and self.google_service_account_email and self.google_private_key)

    @property
    def allowed_extensions_list(self) -> list[str]:
        return [ext.strip().lower() for ext in self.allowed_media_extensions.split(",") if ext.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the application settings."""

    return Settings()
