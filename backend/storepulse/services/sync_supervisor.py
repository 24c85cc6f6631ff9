"""Supervised fire-and-forget background syncs.

WHAT:
    Runs historical backfills as asyncio tasks detached from the request
    that started them, and routes their failures to one error channel.

WHY:
    - Connecting an integration must return immediately; the backfill can
      take minutes against a slow platform API
    - A bare `asyncio.create_task` loses its exception (and the task itself
      can be garbage collected mid-flight); the registry keeps a strong
      reference and guarantees every failure is logged, captured and surfaced
      on the integration

RULES:
    - Failures never propagate to the spawning request
    - No cancellation once started; shutdown waits via `wait_idle()`
    - One running task per name: spawning a name that is still running
      returns the existing task

USAGE:
    task = supervisor.spawn(
        f"backfill:{integration.id}",
        run_backfill(integration.id),
        on_error=mark_integration_failed,
    )
    await supervisor.wait_idle()  # tests / shutdown

RELATED FILES:
    - storepulse/state.py: process-wide instance
    - storepulse/services/integration_service.py: spawns backfills on connect
    - storepulse/main.py: drains on shutdown
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from storepulse.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

# How many recent failures are kept for inspection (health checks, tests)
FAILURE_HISTORY = 50

ErrorHandler = Callable[[BaseException], None]


@dataclass
class SyncFailure:
    name: str
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SyncSupervisor:
    """Registry of running background syncs."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self.failures: Deque[SyncFailure] = deque(maxlen=FAILURE_HISTORY)

    def spawn(
        self,
        name: str,
        work: Awaitable[Any],
        on_error: Optional[ErrorHandler] = None,
    ) -> asyncio.Task:
        """Schedule `work` on the running loop under supervision.

        Must be called from inside an event loop (async endpoint, worker).

        Args:
            name: Task identity, e.g. "backfill:<integration id>"
            work: Coroutine to run
            on_error: Called with the exception after logging and capture

        Returns:
            The supervising task (existing one if `name` is still running)
        """
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            logger.info(f"[SYNC_SUPERVISOR] {name} already running, not spawning again")
            # The caller handed us a coroutine we will never await
            if asyncio.iscoroutine(work):
                work.close()
            return existing

        task = asyncio.get_running_loop().create_task(
            self._supervise(name, work, on_error), name=name
        )
        self._tasks[name] = task
        logger.info(f"[SYNC_SUPERVISOR] Spawned {name} ({len(self._tasks)} running)")
        return task

    async def _supervise(
        self,
        name: str,
        work: Awaitable[Any],
        on_error: Optional[ErrorHandler],
    ) -> None:
        try:
            await work
            logger.info(f"[SYNC_SUPERVISOR] {name} completed")
        except Exception as exc:
            logger.exception(f"[SYNC_SUPERVISOR] {name} failed: {exc}")
            capture_exception(exc, task=name)
            self.failures.append(SyncFailure(name=name, error=str(exc)))
            if on_error is not None:
                try:
                    on_error(exc)
                except Exception as handler_exc:
                    # The error channel itself must not raise into the loop
                    logger.exception(f"[SYNC_SUPERVISOR] Error handler for {name} failed: {handler_exc}")
                    capture_exception(handler_exc, task=name, stage="on_error")
        finally:
            self._tasks.pop(name, None)

    def running(self) -> List[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until every supervised task (including ones spawned meanwhile) finished.

        Returns:
            True when idle, False if `timeout` elapsed first
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while self._tasks:
            pending = list(self._tasks.values())
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, not_done = await asyncio.wait(pending, timeout=remaining)
            if not_done and deadline is not None and loop.time() >= deadline:
                logger.warning(f"[SYNC_SUPERVISOR] Still running after {timeout}s: {self.running()}")
                return False
        return True
