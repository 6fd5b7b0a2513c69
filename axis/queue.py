"""Redis Streams job queue helpers.

Every continuation the governance flow needs (retry an attempt, start an
approved task, re-run a role's autonomous loop, dispatch webhooks) is a
durable job. Delayed jobs wait in a sorted set until a worker promotes them.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, cast
from uuid import uuid4

from redis.exceptions import RedisError

from .config import settings
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)

STREAM_EXECUTE = "stream:jobs:execute"
STREAM_LOOP = "stream:jobs:loop"
STREAM_WEBHOOK = "stream:jobs:webhook"
DELAYED_JOBS = "schedule:jobs:delayed"


class QueueFullError(RuntimeError):
    """Raised when a Redis job stream reaches capacity."""


@dataclass(frozen=True)
class JobPayload:
    job_type: str
    task_id: str | None = None
    role_id: str | None = None
    action_id: str | None = None
    expected_attempt: int | None = None
    job_id: str = field(default_factory=lambda: str(uuid4()))
    schema_version: str = "1.0"
    retry_count: int = 0

    def to_dict(self) -> dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobPayload:
        expected = data.get("expected_attempt")
        return cls(
            job_type=str(data["job_type"]),
            task_id=data.get("task_id") or None,
            role_id=data.get("role_id") or None,
            action_id=data.get("action_id") or None,
            expected_attempt=int(expected) if expected not in (None, "") else None,
            job_id=str(data.get("job_id") or uuid4()),
            schema_version=str(data.get("schema_version", "1.0")),
            retry_count=int(data.get("retry_count", 0) or 0),
        )


STREAM_MAP = {
    "execute": STREAM_EXECUTE,
    "loop": STREAM_LOOP,
    "webhook": STREAM_WEBHOOK,
}


def stream_for_job(job_type: str) -> str:
    try:
        return STREAM_MAP[job_type]
    except KeyError:
        raise ValueError(f"Unknown job type: {job_type}") from None


class Launcher(Protocol):
    """Schedules durable continuations of the governance flow."""

    async def launch_task(self, task_id: str, *, expected_attempt: int | None = None) -> None: ...

    async def schedule_retry(self, task_id: str, *, expected_attempt: int, delay_seconds: float) -> None: ...

    async def trigger_loop(self, role_id: str) -> None: ...

    async def dispatch_webhooks(self, action_id: str) -> None: ...


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_queue_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def enqueue_job(payload: JobPayload) -> str:
    """Enqueue a job to Redis Streams."""
    stream = stream_for_job(payload.job_type)
    await _ensure_capacity(stream)

    redis = get_redis_client()
    msg_id = await redis.xadd(stream, cast(dict[Any, Any], payload.to_dict()))
    logger.debug("Enqueued %s job %s on %s", payload.job_type, payload.job_id, stream)
    return msg_id


async def schedule_job(payload: JobPayload, delay_seconds: float) -> None:
    """Park a job until ``delay_seconds`` from now."""
    if delay_seconds <= 0:
        await enqueue_job(payload)
        return
    redis = get_redis_client()
    due = time.time() + delay_seconds
    await redis.zadd(DELAYED_JOBS, {json.dumps(payload.to_dict(), sort_keys=True): due})


async def promote_due_jobs(*, now: float | None = None, limit: int = 100) -> int:
    """Move due delayed jobs onto their streams; returns how many were promoted."""
    redis = get_redis_client()
    now = time.time() if now is None else now
    members = await redis.zrangebyscore(DELAYED_JOBS, "-inf", now, start=0, num=limit, withscores=True)
    promoted = 0
    for member, due in members:
        # Only the worker that wins the ZREM enqueues the job.
        if await redis.zrem(DELAYED_JOBS, member) != 1:
            continue
        try:
            await enqueue_job(JobPayload.from_dict(json.loads(member)))
        except (QueueFullError, RedisError) as e:
            # Park it again so the next pass retries the promotion.
            await redis.zadd(DELAYED_JOBS, {member: due})
            logger.warning("Delayed job kept for a later promotion: %s", e)
            break
        promoted += 1
    return promoted


class RedisJobQueue:
    """``Launcher`` backed by Redis Streams."""

    async def launch_task(self, task_id: str, *, expected_attempt: int | None = None) -> None:
        await enqueue_job(JobPayload(job_type="execute", task_id=task_id, expected_attempt=expected_attempt))

    async def schedule_retry(self, task_id: str, *, expected_attempt: int, delay_seconds: float) -> None:
        await schedule_job(
            JobPayload(job_type="execute", task_id=task_id, expected_attempt=expected_attempt),
            delay_seconds,
        )

    async def trigger_loop(self, role_id: str) -> None:
        await enqueue_job(JobPayload(job_type="loop", role_id=role_id))

    async def dispatch_webhooks(self, action_id: str) -> None:
        await enqueue_job(JobPayload(job_type="webhook", action_id=action_id))
