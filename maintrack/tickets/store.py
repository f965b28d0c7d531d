from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from packages.db.models import BreakdownTable

from .models import TICKET_FIELDS, Ticket, ticket_from_fields, ticket_to_fields
from .state import Stage


class TicketStoreError(RuntimeError):
    """Raised when the underlying database cannot serve a request."""


@dataclass(frozen=True, slots=True)
class TicketFilter:
    """Match predicate evaluated by the store.

    ``completed`` stages must carry a timestamp and ``pending`` stages must not.
    ``equals`` pins individual columns to an expected value, ``None`` meaning NULL.
    """

    ticket_id: str | None = None
    owner_id: str | None = None
    completed: tuple[Stage, ...] = ()
    pending: tuple[Stage, ...] = ()
    equals: tuple[tuple[str, Any], ...] = ()


class TicketStore:
    """Persistence helper wrapping the ``breakdowns`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine
        self._table = BreakdownTable.__table__
        self._columns = self._table.columns

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def insert(self, ticket: Ticket) -> Ticket:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(BreakdownTable(**ticket_to_fields(ticket)))
        except SQLAlchemyError as exc:
            raise TicketStoreError(f"Failed to insert ticket {ticket.ticket_id}") from exc
        return ticket

    async def find_one_and_update(self, match: TicketFilter, updates: Mapping[str, Any]) -> Ticket | None:
        """Atomically apply ``updates`` to the ticket matching ``match``.

        The predicate and the write run as a single ``UPDATE ... RETURNING``
        statement, so a concurrent writer cannot slip in between them.
        """

        unknown = set(updates) - set(TICKET_FIELDS)
        if unknown:
            raise ValueError(f"Unknown ticket fields: {', '.join(sorted(unknown))}")
        statement = (
            update(self._table)
            .where(*self._conditions(match))
            .values(**dict(updates))
            .returning(*self._columns)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    row = result.mappings().first()
        except SQLAlchemyError as exc:
            raise TicketStoreError("Failed to update ticket") from exc
        if row is None:
            return None
        return ticket_from_fields(row)

    async def find_one(self, match: TicketFilter) -> Ticket | None:
        tickets = await self._select(match, limit=1)
        return tickets[0] if tickets else None

    async def find_many(self, match: TicketFilter | None = None) -> list[Ticket]:
        return await self._select(match or TicketFilter())

    async def delete_one(self, match: TicketFilter) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(delete(self._table).where(*self._conditions(match)))
        except SQLAlchemyError as exc:
            raise TicketStoreError("Failed to delete ticket") from exc
        return bool(result.rowcount)

    async def _select(self, match: TicketFilter, *, limit: int | None = None) -> list[Ticket]:
        statement = select(BreakdownTable).where(*self._conditions(match)).order_by(BreakdownTable.open_at.asc())
        if limit is not None:
            statement = statement.limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                rows = result.scalars().all()
        except SQLAlchemyError as exc:
            raise TicketStoreError("Failed to query tickets") from exc
        return [self._row_to_ticket(row) for row in rows]

    def _conditions(self, match: TicketFilter) -> Sequence[Any]:
        conditions: list[Any] = []
        if match.ticket_id is not None:
            conditions.append(self._columns["ticket_id"] == match.ticket_id)
        if match.owner_id is not None:
            conditions.append(self._columns["owner_id"] == match.owner_id)
        for stage in match.completed:
            conditions.append(self._columns[stage.timestamp_field].is_not(None))
        for stage in match.pending:
            conditions.append(self._columns[stage.timestamp_field].is_(None))
        for name, value in match.equals:
            column = self._columns[name]
            conditions.append(column.is_(None) if value is None else column == value)
        return conditions

    def _row_to_ticket(self, row: BreakdownTable) -> Ticket:
        return ticket_from_fields({name: getattr(row, name) for name in TICKET_FIELDS})
