from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the changed fields between two record states.

    Returns a dict of field -> {"from": old, "to": new} for every field whose
    value differs (fields missing on one side compare as None).
    """
    if not before or not after:
        return {}

    changed = {}
    for key in set(before.keys()) | set(after.keys()):
        if key == "updated_at":
            continue
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            changed[key] = {"from": before_val, "to": after_val}
    return changed

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Write an audit log entry; field diffs are stored under metadata.diff.

    Audit failures are logged and never propagate to the billing operation.
    """
    try:
        db = database.get_db()

        enriched_metadata = metadata.copy() if metadata else {}
        diff = calculate_diff(before_state, after_state)
        if diff:
            enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            owner_id=owner_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )

        doc = audit_log.model_dump(mode="json")
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}" + (f" with {len(diff)} changes" if diff else ""))
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
