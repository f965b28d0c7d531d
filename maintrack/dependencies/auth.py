import logging
import secrets
from dataclasses import dataclass
from typing import Annotated, Sequence

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from maintrack.core.config import AdminAccount, Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdminIdentity:
    """Authenticated administrator attached to privileged requests."""

    id: str
    username: str
    role: str


basic_scheme = HTTPBasic(auto_error=False)


def authenticate_admin(
    username: str,
    password: str,
    accounts: Sequence[AdminAccount],
) -> AdminIdentity | None:
    """Return the identity of an active admin whose credentials match."""

    for account in accounts:
        if not account.is_active or account.username != username:
            continue
        if secrets.compare_digest(account.password.encode("utf-8"), password.encode("utf-8")):
            return AdminIdentity(id=account.admin_id, username=account.username, role=account.role)
        return None
    return None


async def get_settings_dependency() -> Settings:
    return get_settings()


async def require_admin(
    credentials: Annotated[HTTPBasicCredentials | None, Security(basic_scheme)],
    settings: Annotated[Settings, Depends(get_settings_dependency)],
) -> AdminIdentity:
    """Capability check for administrative endpoints; any admin role is accepted."""

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Basic authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )

    identity = authenticate_admin(credentials.username, credentials.password, settings.admin_accounts)
    if identity is None:
        logger.warning("Rejected admin credentials for %r", credentials.username)
        raise HTTPException(status_code=403, detail="Invalid admin credentials")
    return identity


AdminUser = Annotated[AdminIdentity, Depends(require_admin)]
