from typing import Any

import pytest

from axis import queue
from axis.config import settings
from axis.queue import DELAYED_JOBS, STREAM_EXECUTE, JobPayload, QueueFullError
from axis.workers import base
from axis.workers.base import JobMessage, RedisWorker


class MemoryRedis:
    """Just enough of redis.asyncio for streams, sorted sets and SET NX."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.keys: dict[str, str] = {}
        self.acked: list[tuple[str, str, str]] = []

    async def xlen(self, stream: str) -> int:
        return len(self.streams.get(stream, []))

    async def xadd(self, stream: str, fields: dict[str, Any]) -> str:
        entries = self.streams.setdefault(stream, [])
        msg_id = f"{len(entries) + 1}-0"
        entries.append((msg_id, dict(fields)))
        return msg_id

    async def xack(self, stream: str, group: str, msg_id: str) -> int:
        self.acked.append((stream, group, msg_id))
        return 1

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zrangebyscore(
        self, key: str, low: str, high: float, start: int = 0, num: int | None = None, withscores: bool = False
    ) -> list[Any]:
        due = sorted((score, member) for member, score in self.zsets.get(key, {}).items() if score <= high)
        due = due[start : start + num if num is not None else None]
        return [(member, score) if withscores else member for score, member in due]

    async def zrem(self, key: str, member: str) -> int:
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.keys.pop(key, None) is not None else 0


@pytest.fixture
def redis(monkeypatch) -> MemoryRedis:
    fake = MemoryRedis()
    monkeypatch.setattr(queue, "get_redis_client", lambda: fake)
    monkeypatch.setattr(base, "get_redis_client", lambda: fake)
    return fake


def _retry(task_id: str = "t-1") -> JobPayload:
    return JobPayload(job_type="execute", task_id=task_id, expected_attempt=1)


@pytest.mark.asyncio
async def test_due_jobs_are_promoted(redis) -> None:
    await queue.schedule_job(_retry(), delay_seconds=30)
    assert await queue.promote_due_jobs() == 0

    assert await queue.promote_due_jobs(now=1e12) == 1

    assert redis.zsets[DELAYED_JOBS] == {}
    (_, fields), = redis.streams[STREAM_EXECUTE]
    assert fields["task_id"] == "t-1"
    assert fields["expected_attempt"] == "1"


@pytest.mark.asyncio
async def test_full_stream_keeps_delayed_job(redis, monkeypatch) -> None:
    monkeypatch.setattr(settings, "redis_queue_max_depth", 1)
    await queue.enqueue_job(JobPayload(job_type="execute", task_id="busy"))
    await queue.schedule_job(_retry(), delay_seconds=30)

    assert await queue.promote_due_jobs(now=1e12) == 0

    assert len(redis.zsets[DELAYED_JOBS]) == 1
    assert len(redis.streams[STREAM_EXECUTE]) == 1

    monkeypatch.setattr(settings, "redis_queue_max_depth", 10)
    assert await queue.promote_due_jobs(now=1e12) == 1
    assert redis.zsets[DELAYED_JOBS] == {}


@pytest.mark.asyncio
async def test_enqueue_rejects_full_stream(redis, monkeypatch) -> None:
    monkeypatch.setattr(settings, "redis_queue_max_depth", 0)
    with pytest.raises(QueueFullError):
        await queue.enqueue_job(_retry())


class FailingWorker(RedisWorker):
    def __init__(self) -> None:
        super().__init__(streams=[STREAM_EXECUTE], group="test-group", name="test")
        self.processed: list[dict[str, Any]] = []

    async def process(self, payload: dict[str, Any]) -> None:
        self.processed.append(payload)
        raise RuntimeError("backend down")


def _message(retry_count: int = 0, job_id: str = "job-1") -> JobMessage:
    payload = JobPayload(job_type="execute", task_id="t-1", job_id=job_id, retry_count=retry_count).to_dict()
    return JobMessage(msg_id="9-0", stream=STREAM_EXECUTE, payload=payload)


@pytest.mark.asyncio
async def test_failed_job_is_requeued(redis) -> None:
    worker = FailingWorker()

    await worker.handle(_message())

    (_, fields), = redis.streams[STREAM_EXECUTE]
    assert fields["retry_count"] == "1"
    assert redis.acked == [(STREAM_EXECUTE, "test-group", "9-0")]
    assert "idempotency:execute:job-1" not in redis.keys


@pytest.mark.asyncio
async def test_last_delivery_goes_to_dead_letter_stream(redis) -> None:
    worker = FailingWorker()

    await worker.handle(_message(retry_count=2))

    assert STREAM_EXECUTE not in redis.streams
    (_, fields), = redis.streams["stream:dlq:execute"]
    assert fields["error"] == "backend down"
    assert redis.acked == [(STREAM_EXECUTE, "test-group", "9-0")]


@pytest.mark.asyncio
async def test_duplicate_delivery_is_acked_without_processing(redis) -> None:
    worker = FailingWorker()
    redis.keys["idempotency:execute:job-1"] = "1"

    await worker.handle(_message())

    assert worker.processed == []
    assert redis.acked == [(STREAM_EXECUTE, "test-group", "9-0")]
