"""Audit log for state-changing operations."""

from typing import Protocol

from ..logging_config import get_logger, log_context
from ..models import AuditLogEntry

logger = get_logger(__name__)


class IAuditStore(Protocol):
    async def save_audit_entry(self, entry: AuditLogEntry) -> str:
        ...

    async def get_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        ...


class AuditLog:
    """Writes audit entries without ever failing the mutation they describe."""

    def __init__(self, store: IAuditStore):
        self._store = store

    async def record(self, entry: AuditLogEntry) -> str | None:
        """Persist entry and return its id, or None if the write failed."""
        try:
            entry_id = await self._store.save_audit_entry(entry)
        except Exception as e:
            logger.error(
                "Failed to write audit entry %s for %s %s: %s",
                entry.action,
                entry.entity_type,
                entry.entity_id,
                e,
                exc_info=True,
                extra=log_context(entry.correlation_id, entity_id=entry.entity_id),
            )
            return None

        logger.debug(
            "Audit %s on %s %s",
            entry.action,
            entry.entity_type,
            entry.entity_id,
            extra=log_context(entry.correlation_id, audit_log_id=entry_id),
        )
        return entry_id

    async def get_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        return await self._store.get_audit_entries(
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            limit=limit,
        )
