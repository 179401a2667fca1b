"""Deferred auto-complete.

Delivery persists a `DueWork` record; the worker polls for due records and
re-reads the transaction before acting. There is no cancellation: if a
dispute (or anything else) moved the transaction out of `delivered`, the work
is marked skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from .engine import Clock, EscrowEngine, utc_now
from .errors import ErrorCode, EscrowError
from .store import DueWorkStore
from .types import DueAction, DueStatus, DueWork, TransactionStatus

logger = logging.getLogger(__name__)


class AutoCompleteWorker:
    """Polls due work and fires auto-complete."""

    def __init__(self, engine: EscrowEngine, due_work: DueWorkStore, clock: Clock = utc_now):
        self._engine = engine
        self._due_work = due_work
        self._clock = clock
        self.task: Optional[asyncio.Task] = None

    async def run_due(self, now: Optional[datetime] = None) -> List[DueWork]:
        """Process every record due at `now`; returns the updated records."""
        now = now or self._clock()
        processed = []
        for work in await self._due_work.due(now):
            processed.append(await self._fire(work))
        if processed:
            logger.info(f"Auto-complete pass: {len(processed)} due record(s) processed")
        return processed

    async def _fire(self, work: DueWork) -> DueWork:
        work = replace(work, attempts=work.attempts + 1)
        if work.action != DueAction.AUTO_COMPLETE:
            work = replace(work, status=DueStatus.FAILED, last_error=f"unknown action {work.action}")
            await self._due_work.update(work)
            return work

        try:
            record = await self._engine.get(work.transaction_id)
        except EscrowError as exc:
            work = replace(work, status=DueStatus.FAILED, last_error=str(exc))
            await self._due_work.update(work)
            return work

        if record.status != TransactionStatus.DELIVERED:
            logger.info(
                f"Auto-complete for {work.transaction_id} skipped: "
                f"transaction is {record.status.value}"
            )
            work = replace(
                work, status=DueStatus.SKIPPED, last_error=f"status {record.status.value}"
            )
            await self._due_work.update(work)
            return work

        try:
            await self._engine.auto_complete(work.transaction_id)
        except EscrowError as exc:
            if exc.code == ErrorCode.STATE_CONFLICT:
                # Another transition committed between the re-read and our write.
                logger.info(f"Auto-complete for {work.transaction_id} lost race: {exc.message}")
                work = replace(work, status=DueStatus.SKIPPED, last_error=exc.message)
            else:
                logger.warning(f"Auto-complete for {work.transaction_id} failed: {exc}")
                work = replace(work, status=DueStatus.FAILED, last_error=str(exc))
        else:
            work = replace(work, status=DueStatus.DONE, last_error=None)
        await self._due_work.update(work)
        return work

    async def run_forever(self, interval: float, stop: asyncio.Event) -> None:
        """Poll every `interval` seconds until `stop` is set."""
        logger.info(f"Auto-complete worker started (interval={interval}s)")
        while not stop.is_set():
            await self.run_due()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Auto-complete worker stopped")

    def start(self, interval: float, stop: asyncio.Event) -> asyncio.Task:
        self.task = asyncio.create_task(self.run_forever(interval, stop))
        return self.task

    async def retry(self, transaction_id: str) -> DueWork:
        """Operator path: re-arm a failed auto-complete and fire it now."""
        work = await self._due_work.get(transaction_id)
        if work is None:
            raise EscrowError(ErrorCode.NOT_FOUND, f"no due work for {transaction_id}")
        if work.status != DueStatus.FAILED:
            raise EscrowError(
                ErrorCode.STATE_CONFLICT, f"due work for {transaction_id} is {work.status.value}"
            )
        return await self._fire(replace(work, status=DueStatus.SCHEDULED))
