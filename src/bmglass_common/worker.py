"""Periodic in-process background worker for aiohttp services.

Usage::

    worker = BackgroundWorker(
        name="maintenance",
        interval_seconds=60.0,
        tasks=[WorkerTask(name="webhook_purge_succeeded", fn=purge)],
    )
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)

A task function receives the current UTC time and returns an optional
summary string, which is logged when non-empty.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """Runs a list of tasks every ``interval_seconds``.

    A failing task is logged and does not prevent the other tasks (or the
    next sweep) from running.
    """

    name: str = "background_worker"
    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    @property
    def _app_key(self) -> str:
        return f"__worker_{self.name}__"

    async def start(self, app: web.Application) -> None:
        """Spawn the worker loop. Register with ``app.on_startup``."""
        app[self._app_key] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        """Cancel the worker loop. Register with ``app.on_cleanup``."""
        task = app.get(self._app_key)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task failed", worker=self.name, task=task.name)
                continue
            if summary:
                logger.info(
                    "background_task completed",
                    worker=self.name,
                    task=task.name,
                    summary=summary,
                )

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            worker=self.name,
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped", worker=self.name)
                raise
