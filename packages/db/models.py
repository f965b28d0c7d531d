"""SQLModel table definitions for the breakdown tracker data layer."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class BreakdownTable(SQLModel, table=True):
    """Breakdown tickets, one column per stage sub-field."""

    __tablename__ = "breakdowns"

    ticket_id: str = Field(primary_key=True, index=True)
    owner_id: str = Field(sa_column=Column(String(255), nullable=False, index=True))

    open_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    temporary_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closure_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    approval_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    machine_id: str = Field(sa_column=Column(String(255), nullable=False))
    machine_family: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    breakdown_type: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    production_stopped: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    problem_description: str = Field(sa_column=Column(Text, nullable=False))
    open_media_url: str | None = Field(default=None, sa_column=Column(String(512), nullable=True))

    temporary_maintenance_id: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    corrective_action: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    spare_used: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    temporary_approved: bool | None = Field(default=None, sa_column=Column(Boolean, nullable=True))

    closure_maintenance_id: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    analysis_report: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    closure_media_url: str | None = Field(default=None, sa_column=Column(String(512), nullable=True))
    closure_approved: bool | None = Field(default=None, sa_column=Column(Boolean, nullable=True))

    approval_id: str | None = Field(default=None, sa_column=Column(String(100), nullable=True))
    approval_status: str | None = Field(default=None, sa_column=Column(String(50), nullable=True))
    approval_approved: bool | None = Field(default=None, sa_column=Column(Boolean, nullable=True))
