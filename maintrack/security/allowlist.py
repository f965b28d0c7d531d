"""Pre-approved identifier codes required to advance a breakdown ticket."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, FrozenSet, Iterable

from maintrack.tickets.state import Stage

if TYPE_CHECKING:
    from maintrack.core.config import Settings

logger = logging.getLogger(__name__)

# Codes accepted when no deployment configuration overrides them.
DEFAULT_MAINTENANCE_CODES: tuple[str, ...] = ("MNT-2023-001", "MNT-2023-002", "MNT-2023-003")
DEFAULT_CLOSURE_CODES: tuple[str, ...] = ("CLS-2023-001", "CLS-2023-002", "CLS-2023-003")
DEFAULT_APPROVAL_CODES: tuple[str, ...] = ("APPR-2023-001", "APPR-2023-002")


class AllowlistValidationError(PermissionError):
    """Raised when a code is not part of the stage's allowlist."""

    def __init__(self, stage: Stage, code: str) -> None:
        super().__init__(f"Code {code!r} is not approved for the {stage.value} stage")
        self.stage = stage
        self.code = code


def normalize_code(code: str) -> str:
    return code.strip().upper()


def parse_codes(raw: str | Iterable[str]) -> FrozenSet[str]:
    """Split a comma separated setting into a set of normalised codes."""

    items = raw.split(",") if isinstance(raw, str) else raw
    return frozenset(normalize_code(item) for item in items if item and item.strip())


@dataclass(frozen=True)
class AllowlistConfig:
    """Immutable allowlists, one per gated stage."""

    maintenance: FrozenSet[str]
    closure: FrozenSet[str]
    approval: FrozenSet[str]

    @classmethod
    def default(cls) -> "AllowlistConfig":
        return cls(
            maintenance=parse_codes(DEFAULT_MAINTENANCE_CODES),
            closure=parse_codes(DEFAULT_CLOSURE_CODES),
            approval=parse_codes(DEFAULT_APPROVAL_CODES),
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AllowlistConfig":
        """Build the allowlists from application settings."""

        return cls(
            maintenance=parse_codes(settings.maintenance_codes),
            closure=parse_codes(settings.closure_codes),
            approval=parse_codes(settings.approval_codes),
        )

    def codes_for(self, stage: Stage) -> FrozenSet[str]:
        if stage is Stage.TEMPORARY:
            return self.maintenance
        if stage is Stage.CLOSURE:
            return self.closure
        if stage is Stage.APPROVAL:
            return self.approval
        raise ValueError(f"Stage {stage.value} has no allowlist")

    def is_allowed(self, stage: Stage, code: str | None) -> bool:
        """Check whether ``code`` belongs to the allowlist of ``stage``."""

        if not code:
            return False
        return normalize_code(code) in self.codes_for(stage)

    def validate(self, stage: Stage, code: str | None) -> str:
        """Return the allowlisted form of ``code`` or raise ``AllowlistValidationError``."""

        if not self.is_allowed(stage, code):
            logger.error("Rejected %s code %r: not in allowlist", stage.value, code)
            raise AllowlistValidationError(stage, code or "")
        normalized = normalize_code(code)
        logger.debug("Allowlist validation succeeded for %s code %s", stage.value, normalized)
        return normalized
