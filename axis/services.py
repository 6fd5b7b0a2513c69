"""Collaborators shared by the governance operations."""

from __future__ import annotations

from dataclasses import dataclass, field

from .classifier import Classifier, KeywordClassifier
from .config import settings
from .events import EventEmitter, event_bus
from .execution import ExecutionBackend, GatewayExecutionBackend, SSEExecutionBackend
from .gateway import GatewayClient
from .governance import GovernancePolicy
from .queue import Launcher, RedisJobQueue


@dataclass
class Services:
    backend: ExecutionBackend
    launcher: Launcher
    gateway: GatewayClient | None = None
    classifier: Classifier = field(default_factory=KeywordClassifier)
    policy: GovernancePolicy = field(default_factory=GovernancePolicy)
    events: EventEmitter = field(default_factory=lambda: event_bus)

    async def aclose(self) -> None:
        for client in (self.backend, self.gateway):
            if client is None:
                continue
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()


def build_services(*, launcher: Launcher | None = None) -> Services:
    """Wire the production collaborators from settings."""
    gateway = GatewayClient() if settings.gateway_api_key else None
    backend: ExecutionBackend
    if settings.execution_url:
        backend = SSEExecutionBackend()
    elif gateway is not None:
        backend = GatewayExecutionBackend(gateway)
    else:
        backend = GatewayExecutionBackend(GatewayClient())
    return Services(backend=backend, launcher=launcher or RedisJobQueue(), gateway=gateway)
