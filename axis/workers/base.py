"""Redis stream worker base class."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, cast

from redis.exceptions import RedisError, ResponseError

from ..config import settings
from ..queue import promote_due_jobs
from ..redis_client import get_redis_client

logger = logging.getLogger(__name__)

MAX_DELIVERIES = 3


@dataclass
class JobMessage:
    msg_id: str
    stream: str
    payload: dict[str, Any]


class RedisWorker:
    """Base worker consuming jobs from a set of Redis Streams."""

    def __init__(self, *, streams: list[str], group: str, name: str = "worker") -> None:
        self.streams = streams
        self.group = group
        self.consumer = f"{name}-{int(time.time())}"
        self.shutdown_requested = False

    async def setup(self) -> None:
        redis = get_redis_client()
        for stream in self.streams:
            try:
                await redis.xgroup_create(stream, self.group, id="$", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def _next_job(self) -> JobMessage | None:
        redis = get_redis_client()
        for stream in self.streams:
            result = await redis.xreadgroup(
                groupname=self.group,
                consumername=self.consumer,
                streams={stream: ">"},
                count=1,
                block=1000,
            )
            if result:
                stream_name, messages = result[0]
                msg_id, payload = messages[0]
                return JobMessage(msg_id=msg_id, stream=stream_name, payload=payload)
        return None

    async def _ack(self, job: JobMessage) -> None:
        redis = get_redis_client()
        await redis.xack(job.stream, self.group, job.msg_id)

    async def _to_dlq(self, job: JobMessage, error: str) -> None:
        redis = get_redis_client()
        dlq = f"stream:dlq:{job.payload.get('job_type', 'unknown')}"
        payload = dict(job.payload)
        payload["error"] = error
        await redis.xadd(dlq, cast(dict[Any, Any], payload))
        await self._ack(job)
        logger.error("Job %s moved to %s: %s", job.payload.get("job_id"), dlq, error)

    async def _requeue(self, job: JobMessage, retry_count: int) -> None:
        redis = get_redis_client()
        payload = dict(job.payload)
        payload["retry_count"] = str(retry_count)
        # The redelivered copy must be allowed through the idempotency gate again.
        await redis.delete(self._idempotency_key(job.payload))
        await redis.xadd(job.stream, cast(dict[Any, Any], payload))
        await self._ack(job)

    @staticmethod
    def _idempotency_key(payload: dict[str, Any]) -> str:
        return f"idempotency:{payload.get('job_type')}:{payload.get('job_id')}"

    async def _should_process(self, payload: dict[str, Any]) -> bool:
        if not payload.get("job_type") or not payload.get("job_id"):
            return False
        redis = get_redis_client()
        key = self._idempotency_key(payload)
        return await redis.set(key, "1", nx=True, ex=settings.redis_idempotency_ttl_seconds) is True

    async def process(self, payload: dict[str, Any]) -> None:
        """Override in subclasses to execute a job."""
        raise NotImplementedError

    async def handle(self, job: JobMessage) -> None:
        if not await self._should_process(job.payload):
            await self._ack(job)
            return
        try:
            await self.process(job.payload)
            await self._ack(job)
        except Exception as exc:
            logger.exception("Job %s failed", job.payload.get("job_id"))
            retry_count = int(job.payload.get("retry_count", "0") or 0) + 1
            if retry_count >= MAX_DELIVERIES:
                await self._to_dlq(job, str(exc))
            else:
                await self._requeue(job, retry_count)

    async def run_forever(self) -> None:
        await self.setup()
        self._install_signal_handlers()
        logger.info("Worker %s consuming %s", self.consumer, ", ".join(self.streams))

        while not self.shutdown_requested:
            try:
                await promote_due_jobs()
                job = await self._next_job()
            except RedisError:
                logger.exception("Redis unavailable, retrying")
                await asyncio.sleep(1.0)
                continue
            if not job:
                continue
            try:
                await self.handle(job)
            except RedisError:
                logger.exception("Job %s left pending after a Redis failure", job.payload.get("job_id"))

        # Drain any in-flight state if needed before exit.
        await asyncio.sleep(0.1)
