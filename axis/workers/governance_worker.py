"""Worker running queued attempts, autonomous loops and webhook dispatches."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .. import autonomy, db, task_machine
from ..errors import AxisError, StaleAttemptError, TaskStateError
from ..events import install_default_handlers
from ..logging_config import configure_logging
from ..queue import STREAM_EXECUTE, STREAM_LOOP, STREAM_WEBHOOK, JobPayload
from ..services import Services, build_services
from ..webhooks import WebhookDispatcher
from .base import RedisWorker

logger = logging.getLogger(__name__)


class GovernanceWorker(RedisWorker):
    def __init__(
        self,
        services: Services,
        *,
        dispatcher: WebhookDispatcher | None = None,
        group: str = "governance-workers",
    ) -> None:
        super().__init__(streams=[STREAM_EXECUTE, STREAM_LOOP, STREAM_WEBHOOK], group=group, name="governance")
        self.services = services
        self.dispatcher = dispatcher or WebhookDispatcher()

    async def process(self, payload: dict[str, Any]) -> None:
        job = JobPayload.from_dict(payload)
        try:
            async with db.get_session() as session:
                match job.job_type:
                    case "execute" if job.task_id:
                        outcome = await task_machine.execute_attempt(
                            session, self.services, job.task_id, expected_attempt=job.expected_attempt
                        )
                        logger.info(
                            "Task %s attempt %s: %s", job.task_id, outcome.attempt_number, outcome.status
                        )
                    case "loop" if job.role_id:
                        decision = await autonomy.run(session, self.services, job.role_id)
                        logger.info("Role %s loop decision: %s", job.role_id, decision.action)
                    case "webhook" if job.action_id:
                        summary = await self.dispatcher.dispatch_action(session, job.action_id)
                        logger.info(
                            "Action %s dispatched: %d delivered, %d failed",
                            job.action_id,
                            summary.delivered,
                            summary.failed,
                        )
                    case _:
                        logger.warning("Dropping malformed job %s (%s)", job.job_id, job.job_type)
        except (StaleAttemptError, TaskStateError) as e:
            # Lost race or task already moved on: nothing left for this job to do.
            logger.info("Job %s skipped: %s", job.job_id, e.message)
        except AxisError as e:
            if e.status_code >= 500 or e.status_code == 429:
                raise
            logger.warning("Job %s rejected: %s", job.job_id, e.message)

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        await self.services.aclose()


async def run_worker() -> None:
    install_default_handlers()
    worker = GovernanceWorker(build_services())
    try:
        await worker.run_forever()
    finally:
        await worker.aclose()


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
