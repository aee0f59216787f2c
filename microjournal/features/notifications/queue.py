"""
Background submission for post-creation notifications.

`submit` returns a handle the caller can wait on: a Future for the local
thread pool, an RQ Job for the Redis-backed queue. Jobs sent to RQ must be
module-level callables so a worker process can import them.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Protocol

from redis import Redis
from rq import Queue

logger = logging.getLogger("microjournal.notify")

RQ_QUEUE_NAME = "notifications"
RQ_JOB_TIMEOUT = "5m"
RQ_RESULT_TTL = 3600


class NotificationQueue(Protocol):
    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        ...

    def shutdown(self, wait: bool = True) -> None:
        ...


def _job_name(fn: Callable[..., Any]) -> str:
    return getattr(fn, "__qualname__", None) or repr(fn)


class LocalNotificationQueue:
    """Bounded in-process worker pool."""

    def __init__(self, max_workers: int = 4):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        name = _job_name(fn)

        def _log_failure(done: Future) -> None:
            exc = done.exception()
            if exc is not None:
                logger.error("notify.job_failed", exc_info=exc, extra={"job": name})

        future.add_done_callback(_log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class RqNotificationQueue:
    """Redis-backed queue consumed by `rq worker notifications`."""

    def __init__(self, queue: Queue):
        self._queue = queue

    @classmethod
    def from_url(cls, redis_url: str, name: str = RQ_QUEUE_NAME) -> "RqNotificationQueue":
        return cls(Queue(name, connection=Redis.from_url(redis_url)))

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        job = self._queue.enqueue(
            fn,
            *args,
            kwargs=kwargs or None,
            job_timeout=RQ_JOB_TIMEOUT,
            result_ttl=RQ_RESULT_TTL,
        )
        logger.info("notify.enqueued", extra={"job": _job_name(fn), "job_id": job.id})
        return job

    def shutdown(self, wait: bool = True) -> None:
        # Jobs live in Redis; nothing to drain locally.
        return None


def build_notification_queue(cfg) -> NotificationQueue:
    backend = (getattr(cfg, "NOTIFY_BACKEND", "local") or "local").lower()
    if backend == "rq":
        return RqNotificationQueue.from_url(cfg.REDIS_URL)
    if backend == "local":
        return LocalNotificationQueue(max_workers=cfg.NOTIFY_MAX_WORKERS)
    raise ValueError(f"Unknown NOTIFY_BACKEND: {backend}")
