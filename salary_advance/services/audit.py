from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from salary_advance.core.logging import get_audit_logger
from salary_advance.models.audit_log import AuditLog
from salary_advance.schemas.audit import AuditEvent

audit_logger = get_audit_logger()


def record_audit_event(
    db: AsyncSession,
    tenant_id: int,
    event: AuditEvent,
    *,
    actor_id: int | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction and mirror it to the audit log stream."""
    details = event.details()
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=event.action_name(),
        resource_type=event.resource_type,
        resource_id=event.resource_id(),
        details=details,
    )
    db.add(entry)
    audit_logger.info(
        "%s %s/%s",
        entry.action,
        entry.resource_type,
        entry.resource_id,
        extra={"audit_event": {"actor_id": actor_id, **details}},
    )
    return entry
