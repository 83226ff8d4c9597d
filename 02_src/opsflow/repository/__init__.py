"""Collaborator interfaces and their default implementations."""

from .delivery import HttpWorkflowInvoker, LoggingDeliveryService
from .interfaces import (
    IDecisionProvider,
    IDeliveryService,
    IRepository,
    IWorkflowInvoker,
    matches,
)
from .memory import InMemoryRepository

__all__ = [
    "HttpWorkflowInvoker",
    "IDecisionProvider",
    "IDeliveryService",
    "IRepository",
    "IWorkflowInvoker",
    "InMemoryRepository",
    "LoggingDeliveryService",
    "matches",
]
