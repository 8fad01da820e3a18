"""Durable outbox for reward events bound for the remote reward ledger.

Events are written to the ``sync_outbox`` table synchronously and drained in
the background. Delivery is at-least-once: every event carries a uuid that the
ledger uses as an idempotency key, so a retried post after a lost response is
harmless. Local currency and XP are updated optimistically by the caller and
are never rolled back when delivery fails; failed events simply stay queued
until the next drain.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

import db
from env_validation import EngineConfig
from schemas import SyncEvent

LOGGER = logging.getLogger("drill.outbox")

MIN_AMOUNT = 1
MAX_AMOUNT = 99


def clamp_amount(amount: float) -> Optional[int]:
    """Round and clamp ``amount`` to the ledger range; ``None`` means discard."""

    if amount is None or amount <= 0:
        return None
    return max(MIN_AMOUNT, min(MAX_AMOUNT, int(round(amount))))


@dataclass
class DrainReport:
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def pending(self) -> int:
        return len(self.failed)


class SyncOutbox:
    """Queue and deliver ``SyncEvent`` rows for one ledger endpoint."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        post: Optional[Callable[..., Any]] = None,
        backoff: float = 0.5,
    ):
        self.config = config
        self._post = post or requests.post
        self._backoff = backoff
        self._drain_lock = threading.Lock()

    def _headers(self, event_id: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": event_id,
        }
        if self.config.sync_auth:
            headers["Authorization"] = self.config.sync_auth
        return headers

    def enqueue(
        self,
        learner_id: str,
        amount: float,
        source: str,
        now: Optional[datetime] = None,
        *,
        schedule: bool = True,
    ) -> Optional[SyncEvent]:
        """Persist one event and trigger a background drain.

        Non-positive amounts are dropped with a warning and ``None`` is returned.
        """

        clamped = clamp_amount(amount)
        if clamped is None:
            LOGGER.warning("[Sync] Discarding non-positive amount %s from %s", amount, source)
            return None
        if clamped != amount:
            LOGGER.debug("[Sync] Clamped amount %s to %s", amount, clamped)
        event = SyncEvent(
            event_id=str(uuid.uuid4()),
            amount=clamped,
            source=source,
            created_at=now or datetime.now(timezone.utc),
        )
        db.insert_sync_event(
            event.event_id,
            learner_id,
            event.amount,
            event.source,
            event.created_at.isoformat(),
        )
        LOGGER.info("[Sync] Queued %s (%s x%s) for %s", event.event_id, source, clamped, learner_id)
        if schedule and self.config.sync_enabled:
            self.schedule_drain()
        return event

    async def _deliver_with_retry(self, row: Dict[str, Any]) -> Optional[str]:
        """Post one row; returns ``None`` on success, otherwise the last error."""

        event = SyncEvent(
            event_id=row["event_id"],
            amount=row["amount"],
            source=row["source"],
            created_at=row["created_at"],
        )
        delay = self._backoff
        last_error = "not attempted"
        attempts = max(1, self.config.sync_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.to_thread(
                    self._post,
                    self.config.sync_url,
                    json=event.to_payload(),
                    headers=self._headers(event.event_id),
                    timeout=self.config.sync_timeout,
                )
                status = response.status_code
                # 409 means the ledger already holds this event id.
                if 200 <= status < 300 or status == 409:
                    return None
                last_error = "HTTP %s" % status
                LOGGER.warning(
                    "[Sync] Ledger responded with status %s for %s on attempt %s",
                    status,
                    event.event_id,
                    attempt,
                )
            except requests.RequestException as exc:
                last_error = str(exc) or exc.__class__.__name__
                LOGGER.warning("[Sync] Failed to post %s (attempt %s): %s", event.event_id, attempt, exc)
            if attempt == attempts:
                break
            await asyncio.sleep(delay)
            delay *= 2
        return last_error

    async def drain_async(self, limit: Optional[int] = None) -> DrainReport:
        report = DrainReport()
        if not self.config.sync_enabled:
            report.skipped = True
            return report
        if not self._drain_lock.acquire(blocking=False):
            LOGGER.debug("[Sync] Drain already in progress")
            report.skipped = True
            return report
        try:
            for row in db.list_pending_sync_events(limit):
                error = await self._deliver_with_retry(row)
                if error is None:
                    db.delete_sync_event(row["event_id"])
                    report.delivered.append(row["event_id"])
                else:
                    db.record_sync_failure(row["event_id"], error)
                    report.failed.append(row["event_id"])
        finally:
            self._drain_lock.release()
        if report.delivered or report.failed:
            LOGGER.info(
                "[Sync] Drain finished: %s delivered, %s still queued",
                len(report.delivered),
                len(report.failed),
            )
        return report

    def drain(self, limit: Optional[int] = None) -> DrainReport:
        """Blocking drain for callers outside an event loop."""

        return asyncio.run(self.drain_async(limit))

    def schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            loop.create_task(self.drain_async())
        else:
            threading.Thread(target=lambda: asyncio.run(self.drain_async()), daemon=True).start()

    def pending_count(self, learner_id: Optional[str] = None) -> int:
        return db.count_pending_sync_events(learner_id)
