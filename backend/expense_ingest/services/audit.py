import logging
import uuid
from typing import Any, Optional

from sqlalchemy.orm import Session

from expense_ingest.models.documents import AuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"

ENTITY_DOCUMENT = "imported_document"
ENTITY_VENDOR_RULE = "vendor_category_rule"


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    old_value: Optional[dict[str, Any]] = None,
    new_value: Optional[dict[str, Any]] = None,
    actor_type: str = SYSTEM_ACTOR,
    metadata: Optional[dict[str, Any]] = None,
    message: Optional[str] = None,
) -> AuditLog:
    """Queue an audit row on *db*; the caller's commit persists it."""
    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        audit_meta=metadata,
        message=message,
    )
    db.add(log)
    logger.debug("audit %s %s %s", entity_type, entity_id, action)
    return log
