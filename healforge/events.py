"""
Webhook Event Log
=================

Ingress log for received webhook deliveries. A row is written on receipt and
updated once when processing finishes, so operators can see what arrived
without re-parsing raw payloads.

Usage:
    log = WebhookEventLog(session_maker)
    event = await log.log("workflow_run", "completed", "octo", "repo", summary)
    await log.mark_processed(event.id)
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from healforge.db.models import WebhookEvent
from healforge.errors import StoreIntegrityError

logger = logging.getLogger(__name__)


class WebhookEventLog:
    """Append/update access to the webhook_events table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def log(
        self,
        event_type: str,
        action: Optional[str] = None,
        repo_owner: Optional[str] = None,
        repo_name: Optional[str] = None,
        payload_summary: Optional[str] = None,
    ) -> WebhookEvent:
        async with self._session_maker() as session:
            event = WebhookEvent(
                event_type=event_type,
                action=action,
                repo_owner=repo_owner,
                repo_name=repo_name,
                payload_summary=payload_summary,
                processed=False,
            )
            session.add(event)
            await session.commit()
            await session.refresh(event)
            logger.debug("Logged webhook event %s (%s.%s)", event.id, event_type, action)
            return event

    async def mark_processed(self, event_id: int, error: Optional[str] = None) -> None:
        """Mark an event processed, recording the error text if processing failed."""
        async with self._session_maker() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(processed=True, error=error)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise StoreIntegrityError(f"No webhook event with id {event_id}")
            await session.commit()

    async def recent(self, limit: int = 50) -> list[WebhookEvent]:
        """Newest events first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(WebhookEvent)
                .order_by(WebhookEvent.created_at.desc(), WebhookEvent.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
