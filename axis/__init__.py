"""
Axis Workflow Governance

This package provides the task-retry state machine, the human approval gate
and the autonomous role loop for AI roles, with PostgreSQL-backed state and
Redis Streams continuations.
"""

__version__ = "0.1.0"

# Configuration
from axis.config import Settings

# Errors
from axis.errors import AxisError

# Evaluation
from axis.evaluator import Evaluation, evaluate

# Core models
from axis.models import (
    DeadLetterEntry,
    OutputAction,
    Role,
    Task,
    TaskAttempt,
    TaskStatus,
    WorkflowRequest,
)

# Wiring
from axis.services import Services, build_services

__all__ = [
    # Version
    "__version__",
    # Models
    "Task",
    "TaskAttempt",
    "TaskStatus",
    "DeadLetterEntry",
    "WorkflowRequest",
    "OutputAction",
    "Role",
    # Config
    "Settings",
    # Errors
    "AxisError",
    # Evaluation
    "Evaluation",
    "evaluate",
    # Services
    "Services",
    "build_services",
]
