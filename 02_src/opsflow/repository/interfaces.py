"""Collaborator interfaces consumed by executors and the agent."""

from typing import Any, Protocol

from ..models import (
    AgentInput,
    Decision,
    DeliveryContent,
    DeliveryResult,
    InvocationResponse,
)


class IRepository(Protocol):
    """Business entities as plain dict records, grouped into named collections.

    Every record carries an ``id``.
    """

    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record (id generated when missing) and return it."""
        ...

    async def update(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Merge changes into a record. Returns the updated record or None."""
        ...

    async def find(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """Get one record by id."""
        ...

    async def find_many(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Records whose fields equal every value in ``where``."""
        ...

    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record. False if it did not exist."""
        ...

    async def count(self, collection: str, where: dict[str, Any] | None = None) -> int:
        """Count matching records."""
        ...


class IDeliveryService(Protocol):
    """Third-party delivery for email, SMS, push and in-app messages."""

    async def send_email(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        ...

    async def send_sms(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        ...

    async def send_push(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        ...

    async def send_in_app(self, recipient: str, content: DeliveryContent) -> DeliveryResult:
        ...


class IWorkflowInvoker(Protocol):
    """External workflow engine."""

    async def invoke(
        self,
        workflow_ref: str,
        payload: dict[str, Any],
        timeout_ms: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> InvocationResponse:
        """Start a workflow run. Network failures raise; HTTP errors come back as status codes."""
        ...


class IDecisionProvider(Protocol):
    """Turns a normalized input into a structured decision."""

    async def decide(self, agent_input: AgentInput, org_context: dict[str, Any]) -> Decision:
        ...


def matches(record: dict[str, Any], where: dict[str, Any] | None) -> bool:
    """Equality filter shared by repository implementations.

    A list value in ``where`` matches any of its members.
    """
    if not where:
        return True
    for key, expected in where.items():
        actual = record.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True
