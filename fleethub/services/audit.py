"""
Append-only audit trail for work-order and user changes.

Rows are staged on the caller's session so they commit, or roll back,
together with the change they describe. Each row carries a SHA-256 hash over
its canonical content; ``verify_integrity`` recomputes it.
"""
import hashlib
import json
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog, as_utc, utcnow


def record_audit(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    company_id=None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Stage an audit row on ``db``; the caller's commit persists it.

    Args:
        entity_type: work_order|user
        action: CREATE|UPDATE|TRANSITION|COMPLETE_SERVICE|INSTALL_PART|APPROVE|REJECT|DELETE|DEACTIVATE|...
        company_id: Owning tenant, kept for per-tenant queries
        source: api|system|script
        changes_json: Snapshot or before/after diff
        integrity_secret: Defaults to AUDIT_INTEGRITY_SECRET, then JWT_SECRET
    """
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        company_id=company_id,
        source=source or "system",
        changes_json=_jsonable(changes_json),
        context=_jsonable(context),
        timestamp_utc=utcnow(),
    )
    entry.integrity_hash = compute_integrity_hash(_hashed_values(entry), integrity_secret)
    db.add(entry)
    return entry


def compute_integrity_hash(values: Dict[str, Any], integrity_secret: Optional[str] = None) -> Optional[str]:
    secret = integrity_secret or settings.audit_integrity_secret or settings.jwt_secret
    if not secret:
        return None
    # None values are dropped and keys sorted so the JSON is canonical
    canonical = json.dumps({k: v for k, v in values.items() if v is not None}, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical}:{secret}".encode()).hexdigest()


def verify_integrity(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """True when the stored hash still matches the row's content."""
    if not entry.integrity_hash:
        return False
    return entry.integrity_hash == compute_integrity_hash(_hashed_values(entry), integrity_secret)


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id=None,
    company_id=None,
    actor_id=None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    if company_id:
        query = query.filter(AuditLog.company_id == company_id)
    if actor_id:
        query = query.filter(AuditLog.actor_id == actor_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).offset(offset).limit(limit).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """``{field: {"before": old, "after": new}}`` for every field that changed."""
    return {
        key: {"before": before.get(key), "after": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


def _hashed_values(entry: AuditLog) -> Dict[str, Any]:
    ts = as_utc(entry.timestamp_utc)
    return {
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "company_id": str(entry.company_id) if entry.company_id else None,
        "source": entry.source,
        "timestamp_utc": ts.replace(tzinfo=None).isoformat() if ts else None,
        "changes": entry.changes_json,
        "context": entry.context,
    }


def _jsonable(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # UUIDs, datetimes and enums are stored as strings
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))
