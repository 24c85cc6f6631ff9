"""Webhook delivery audit log.

WHAT:
    Records one WebhookEvent row per delivery attempt and moves it through
    received -> processed | failed | duplicate.

WHY:
    - Platforms retry deliveries; the log is how we answer "did we already
      count this order?"
    - Rejected deliveries (bad signature, bad JSON) are kept too, so a
      misconfigured secret shows up as a trail of
      `signature_verification_failed` rows instead of silence

EXACTLY-ONCE:
    `find_processed` is only a fast path. The real guarantee is the partial
    unique index on (integration_id, topic, external_id) WHERE status =
    'processed': DataPoints and the `processed` transition are committed
    together, so when two deliveries of the same event race, the loser's
    commit fails as a whole and its attempt is recorded as `duplicate`.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storepulse.models import WebhookEvent, WebhookStatusEnum, utcnow
from storepulse.services.metric_extractor import DataPointDraft
from storepulse.services.metric_store import SqlMetricStore

logger = logging.getLogger(__name__)

# Error text is stored for operators, not full payload dumps
MAX_ERROR_LENGTH = 2000


class WebhookEventLog:
    def __init__(self, db: Session):
        self.db = db

    def find_processed(
        self,
        integration_id: UUID,
        topic: str,
        external_id: Optional[str],
    ) -> Optional[WebhookEvent]:
        if external_id is None:
            return None
        stmt = select(WebhookEvent).where(
            WebhookEvent.integration_id == integration_id,
            WebhookEvent.topic == topic,
            WebhookEvent.external_id == external_id,
            WebhookEvent.status == WebhookStatusEnum.processed,
        )
        return self.db.execute(stmt).scalars().first()

    def record(
        self,
        integration_id: UUID,
        topic: str,
        status: WebhookStatusEnum,
        external_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> WebhookEvent:
        """Insert and commit a new attempt row."""
        event = WebhookEvent(
            integration_id=integration_id,
            topic=topic,
            status=status,
            external_id=external_id,
            error=error[:MAX_ERROR_LENGTH] if error else None,
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def complete(
        self,
        event: WebhookEvent,
        drafts: Iterable[DataPointDraft],
        store: Optional[SqlMetricStore] = None,
    ) -> bool:
        """Persist DataPoints and mark `event` processed in one transaction.

        Returns:
            True when committed, False when a concurrent delivery of the same
            event was processed first (this attempt becomes `duplicate`).

        Raises:
            IntegrityError: A constraint failed and no processed row exists for
                the event, so this was not a lost race (transaction rolled back)
            SQLAlchemyError: Any other persistence failure (transaction rolled back)
        """
        store = store or SqlMetricStore(self.db)
        try:
            store.add_data_points(event.integration_id, drafts)
            event.status = WebhookStatusEnum.processed
            event.processed_at = utcnow()
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.find_processed(event.integration_id, event.topic, event.external_id) is None:
                # Some other constraint (foreign key, not-null); not a lost race
                raise
            logger.info(
                f"[WEBHOOK_LOG] Concurrent delivery already processed "
                f"{event.topic} {event.external_id}, marking attempt {event.id} duplicate"
            )
            self._set_status(event, WebhookStatusEnum.duplicate, error="already processed")
            return False
        except Exception:
            self.db.rollback()
            raise
        return True

    def mark_failed(self, event: WebhookEvent, error: str) -> None:
        self._set_status(event, WebhookStatusEnum.failed, error=error)

    def _set_status(self, event: WebhookEvent, status: WebhookStatusEnum, error: Optional[str] = None) -> None:
        event.status = status
        event.processed_at = utcnow()
        if error:
            event.error = error[:MAX_ERROR_LENGTH]
        self.db.commit()
