from fastapi import Request

from donorlink.db.record_store import RecordStore
from donorlink.models.audit_entry import AuditEntry


async def log_audit(
    store: RecordStore,
    action: str,
    resource: str,
    resource_id: str = None,
    hospital_id: str = None,
    details: str = None,
    request: Request = None,
) -> AuditEntry:
    ip = request.client.host if request and request.client else None
    user_agent = request.headers.get("user-agent") if request else None

    entry = AuditEntry(
        hospital_id=hospital_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id else None,
        details=details,
        ip_address=ip,
        user_agent=user_agent,
    )
    await store.put(entry.key, entry.to_store())
    return entry
