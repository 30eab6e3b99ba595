"""
Audit and pipeline ledger sink.

Both writes are fire-and-forget: they run in their own session so a failed
audit insert never rolls back the caller's unit of work, and any failure is
logged and swallowed.
"""

from typing import Any, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import PipelineLedgerEvent, SystemEvent

logger = structlog.get_logger()


class EventSink(Protocol):
    """Where pipeline services report operational events and ledger entries."""

    async def write_system_event(
        self,
        *,
        event_type: str,
        severity: str,
        source_system: str,
        deal_id: Optional[UUID] = None,
        bank_id: Optional[UUID] = None,
        error_class: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def log_pipeline_ledger(
        self,
        *,
        deal_id: UUID,
        bank_id: UUID,
        event_key: str,
        status: str = "ok",
        payload: Optional[dict[str, Any]] = None,
    ) -> None: ...


class DatabaseEventSink:
    """EventSink backed by the system_events / pipeline_ledger_events tables."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_maker is None:
            from app.core.database import async_session_maker

            session_maker = async_session_maker
        self._session_maker = session_maker

    async def write_system_event(
        self,
        *,
        event_type: str,
        severity: str,
        source_system: str,
        deal_id: Optional[UUID] = None,
        bank_id: Optional[UUID] = None,
        error_class: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            async with self._session_maker() as session:
                session.add(SystemEvent(
                    event_type=event_type,
                    severity=severity,
                    source_system=source_system,
                    deal_id=deal_id,
                    bank_id=bank_id,
                    error_class=error_class,
                    error_code=error_code,
                    error_message=error_message,
                    payload=payload or {},
                ))
                await session.commit()
        except Exception as exc:
            logger.error(
                "ledger.system_event.failed",
                event_type=event_type,
                error_code=error_code,
                error=str(exc),
            )

    async def log_pipeline_ledger(
        self,
        *,
        deal_id: UUID,
        bank_id: UUID,
        event_key: str,
        status: str = "ok",
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            async with self._session_maker() as session:
                session.add(PipelineLedgerEvent(
                    deal_id=deal_id,
                    bank_id=bank_id,
                    event_key=event_key,
                    status=status,
                    payload=payload or {},
                ))
                await session.commit()
        except Exception as exc:
            logger.error(
                "ledger.pipeline.failed",
                deal_id=str(deal_id),
                event_key=event_key,
                error=str(exc),
            )


_default_sink: Optional[DatabaseEventSink] = None


def get_event_sink() -> EventSink:
    """Process-wide DatabaseEventSink (FastAPI dependency)."""
    global _default_sink
    if _default_sink is None:
        _default_sink = DatabaseEventSink()
    return _default_sink
