"""Outbound webhook dispatch for output actions handed to external executors."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .errors import NotFoundError
from .models import CompanyWebhook, OutputAction, WebhookDelivery

logger = logging.getLogger(__name__)

EXTERNAL_ACTION_EVENT = "external_action_created"
TEST_EVENT = "test"
SUBSCRIPTION = "mark_external"
RESPONSE_BODY_MAX_CHARS = 1000


def sign(secret: str, data: dict[str, Any]) -> str:
    """HMAC-SHA256 hex digest over the JSON encoding of ``data``."""
    body = json.dumps(data)
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def build_payload(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }


@dataclass
class DispatchSummary:
    action_id: str | None
    delivered: int = 0
    failed: int = 0
    delivery_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "delivered": self.delivered,
            "failed": self.failed,
            "delivery_ids": self.delivery_ids,
        }


class WebhookDispatcher:
    """Delivers signed payloads and records one ``WebhookDelivery`` per attempt."""

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds or settings.webhook_timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> WebhookDispatcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def deliver(
        self,
        session: AsyncSession,
        webhook: CompanyWebhook,
        payload: dict[str, Any],
        *,
        action_id: str | None,
    ) -> WebhookDelivery:
        signed = dict(payload)
        if webhook.secret:
            signed["signature"] = sign(webhook.secret, payload["data"])

        delivery = WebhookDelivery(
            id=str(uuid4()),
            webhook_id=webhook.id,
            output_action_id=action_id,
            company_id=webhook.company_id,
            payload=signed,
        )
        session.add(delivery)
        await session.flush()

        headers = {
            "Content-Type": "application/json",
            "X-Axis-Event": payload["event"],
            "X-Axis-Delivery": delivery.id,
            **{str(k): str(v) for k, v in (webhook.headers or {}).items()},
        }
        if "signature" in signed:
            headers["X-Axis-Signature"] = f"sha256={signed['signature']}"

        try:
            resp = await self._client.post(webhook.url, content=json.dumps(signed), headers=headers)
        except httpx.HTTPError as e:
            delivery.error_message = str(e) or type(e).__name__
            delivery.retry_count = 1
            logger.warning("Webhook delivery failed for %s: %s", webhook.name, delivery.error_message)
        else:
            delivery.response_status = resp.status_code
            delivery.response_body = resp.text[:RESPONSE_BODY_MAX_CHARS]
            delivery.delivered_at = datetime.now(UTC)
            delivery.error_message = None if resp.is_success else f"HTTP {resp.status_code}"
            logger.info("Webhook delivered to %s: %s", webhook.name, resp.status_code)
        await session.flush()
        return delivery

    async def dispatch_action(self, session: AsyncSession, action_id: str) -> DispatchSummary:
        """Notify every active ``mark_external`` subscriber of the company."""
        result = await session.execute(select(OutputAction).where(OutputAction.id == action_id))
        action = result.scalar_one_or_none()
        if action is None:
            raise NotFoundError("Output action not found", action_id=action_id)

        summary = DispatchSummary(action_id=action.id)
        webhooks = await active_subscribers(session, action.company_id)
        if not webhooks:
            logger.info("No active webhooks configured for company %s", action.company_id)
            return summary

        task = await db.get_task(session, action.task_id)
        role = await db.get_role(session, task.role_id) if task is not None else None
        data = dict(action.action_data or {})
        payload = build_payload(
            EXTERNAL_ACTION_EVENT,
            {
                "action_id": action.id,
                "task_id": action.task_id,
                "task_title": data.get("task_title") or (task.title if task else ""),
                "role_name": data.get("role_name") or (role.label if role else ""),
                "output_summary": data.get("summary") or (task.completion_summary if task else "") or "",
                "company_id": action.company_id,
                "notes": action.notes,
            },
        )
        for webhook in webhooks:
            delivery = await self.deliver(session, webhook, payload, action_id=action.id)
            summary.delivery_ids.append(delivery.id)
            if delivery.error_message is None:
                summary.delivered += 1
            else:
                summary.failed += 1
        await session.commit()
        return summary

    async def send_test(self, session: AsyncSession, webhook_id: str) -> WebhookDelivery:
        result = await session.execute(select(CompanyWebhook).where(CompanyWebhook.id == webhook_id))
        webhook = result.scalar_one_or_none()
        if webhook is None:
            raise NotFoundError("Webhook not found", webhook_id=webhook_id)
        payload = build_payload(
            TEST_EVENT,
            {
                "action_id": "test-action-id",
                "task_id": "test-task-id",
                "task_title": "Test Webhook Delivery",
                "role_name": "Test Role",
                "output_summary": "This is a test payload from Axis to verify webhook connectivity.",
                "company_id": webhook.company_id,
            },
        )
        delivery = await self.deliver(session, webhook, payload, action_id=None)
        await session.commit()
        return delivery


async def active_subscribers(session: AsyncSession, company_id: str) -> list[CompanyWebhook]:
    result = await session.execute(
        select(CompanyWebhook)
        .where(CompanyWebhook.company_id == company_id, CompanyWebhook.is_active.is_(True))
        .order_by(CompanyWebhook.created_at)
    )
    return [hook for hook in result.scalars().all() if SUBSCRIPTION in (hook.event_types or [])]
