import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from expense_ingest.core.errors import ConflictError
from expense_ingest.models.documents import FAILURE_REASON_MAX_LENGTH, ImportedDocument, utcnow
from expense_ingest.schemas.imports import ImportedDocumentStatus
from expense_ingest.services.audit import ENTITY_DOCUMENT, create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_REASON = "Unknown"

ALLOWED_TRANSITIONS = {
    ImportedDocumentStatus.UPLOADED: [ImportedDocumentStatus.PARSED, ImportedDocumentStatus.FAILED],
    ImportedDocumentStatus.PARSED: [
        ImportedDocumentStatus.PARSED,
        ImportedDocumentStatus.CONFIRMED,
        ImportedDocumentStatus.FAILED,
    ],
    ImportedDocumentStatus.FAILED: [ImportedDocumentStatus.PARSED, ImportedDocumentStatus.FAILED],
    ImportedDocumentStatus.CONFIRMED: [],
}


def _snapshot(document: ImportedDocument) -> dict[str, Any]:
    return {
        "status": document.status,
        "is_ocr_used": bool(document.is_ocr_used),
        "failure_reason": document.failure_reason,
    }


def apply_transition(
    db: Session,
    *,
    document: ImportedDocument,
    new_status: ImportedDocumentStatus,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    """Validate and record a status move. Returns False for Confirmed -> Confirmed.

    Re-parsing (Parsed -> Parsed) and repeated failures are real transitions
    because they change the recorded OCR flag or reason.
    """
    current = ImportedDocumentStatus(document.status)

    if current == ImportedDocumentStatus.CONFIRMED and new_status == ImportedDocumentStatus.CONFIRMED:
        return False

    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise ConflictError(
            f"Document {document.id} cannot move from {current.value} to {new_status.value}",
            details={"status": current.value},
        )

    document.status = new_status.value
    logger.info("Document %s: %s -> %s", document.id, current.value, new_status.value)
    return True


def mark_parsed(db: Session, document: ImportedDocument, *, is_ocr_used: bool) -> None:
    before = _snapshot(document)
    apply_transition(db, document=document, new_status=ImportedDocumentStatus.PARSED)
    document.is_ocr_used = is_ocr_used
    document.failure_reason = None
    document.processed_at = utcnow()
    create_audit_log(
        db,
        entity_type=ENTITY_DOCUMENT,
        entity_id=document.id,
        action="DOCUMENT_PARSED",
        old_value=before,
        new_value=_snapshot(document),
    )


def mark_failed(db: Session, document: ImportedDocument, reason: Optional[str], *, error_kind: str = "") -> None:
    before = _snapshot(document)
    apply_transition(db, document=document, new_status=ImportedDocumentStatus.FAILED)
    text = (reason or "").strip() or DEFAULT_FAILURE_REASON
    document.failure_reason = text[:FAILURE_REASON_MAX_LENGTH]
    document.processed_at = utcnow()
    create_audit_log(
        db,
        entity_type=ENTITY_DOCUMENT,
        entity_id=document.id,
        action="DOCUMENT_FAILED",
        old_value=before,
        new_value=_snapshot(document),
        metadata={"error": error_kind} if error_kind else None,
    )


def mark_confirmed(db: Session, document: ImportedDocument, *, created_count: int = 0) -> bool:
    before = _snapshot(document)
    if not apply_transition(db, document=document, new_status=ImportedDocumentStatus.CONFIRMED):
        return False
    document.processed_at = utcnow()
    create_audit_log(
        db,
        entity_type=ENTITY_DOCUMENT,
        entity_id=document.id,
        action="DOCUMENT_CONFIRMED",
        old_value=before,
        new_value=_snapshot(document),
        metadata={"created_expenses": created_count},
    )
    return True
