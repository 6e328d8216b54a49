import logging
import os
import tempfile
import uuid
from functools import lru_cache
from pathlib import Path

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from expense_ingest.core.config import get_settings
from expense_ingest.core.dependencies import get_db
from expense_ingest.core.errors import NotFoundError, ValidationFailedError
from expense_ingest.core.storage import COPY_CHUNK_SIZE
from expense_ingest.models.documents import ImportedDocument, VendorCategoryRule
from expense_ingest.schemas.imports import (
    CategorySuggestionOut,
    ConfirmImportRequest,
    ConfirmImportResult,
    ImportedDocumentOut,
    ImportResult,
    ImportSetupStatus,
    InterpretRequest,
    InterpretResult,
    ParseResult,
    ProcessDocumentResult,
    ReviewDraftRequest,
    ReviewDraftResult,
    SuggestCategoryRequest,
    VendorRuleCreate,
    VendorRuleOut,
)
from expense_ingest.services.ai.common.local_runtime import get_local_runtime
from expense_ingest.services.import_pipeline import ImportPipeline, interpretation_out, suggestion_out
from expense_ingest.services.setup_status import get_setup_status

router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache
def get_pipeline() -> ImportPipeline:
    return ImportPipeline.from_settings()


def _doc_to_out(doc: ImportedDocument) -> ImportedDocumentOut:
    return ImportedDocumentOut(
        id=str(doc.id),
        original_file_name=doc.original_file_name,
        stored_file_name=doc.stored_file_name,
        file_extension=doc.file_extension,
        size_bytes=doc.size_bytes,
        content_hash=doc.content_hash,
        status=doc.status,
        is_ocr_used=bool(doc.is_ocr_used),
        failure_reason=doc.failure_reason,
        created_at=doc.created_at,
        processed_at=doc.processed_at,
    )


def _rule_to_out(rule: VendorCategoryRule) -> VendorRuleOut:
    return VendorRuleOut(
        id=str(rule.id),
        keyword=rule.keyword,
        keyword_normalized=rule.keyword_normalized,
        category_id=str(rule.category_id),
        confidence=rule.confidence,
        is_active=bool(rule.is_active),
        created_at=rule.created_at,
        last_used_at=rule.last_used_at,
    )


async def _spool_upload(file: UploadFile, limit: int) -> str:
    """Copy the upload to a temporary file so the store can hash it from disk."""
    fd, path = tempfile.mkstemp(prefix="upload_", suffix=Path(file.filename or "").suffix)
    size = 0
    try:
        with os.fdopen(fd, "wb") as out:
            while True:
                chunk = await file.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > limit:
                    raise ValidationFailedError(f"File exceeds the {limit} byte upload limit")
                out.write(chunk)
    except BaseException:
        os.unlink(path)
        raise
    if size == 0:
        os.unlink(path)
        raise ValidationFailedError("Uploaded file is empty")
    return path


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


@router.get("/imports/setup", response_model=ImportSetupStatus)
def import_setup_status(pipeline: ImportPipeline = Depends(get_pipeline)):
    runtime = get_local_runtime() if get_settings().llm_provider == "local" else None
    return get_setup_status(pipeline.extractor, runtime)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@router.post("/imports", response_model=ImportResult, status_code=201)
async def import_document(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    settings = get_settings()
    original_name = (file.filename or "").strip()
    if not original_name:
        raise ValidationFailedError("Original file name is required")

    path = await _spool_upload(file, settings.max_import_bytes)
    try:
        return await pipeline.import_document(db, path, original_name)
    finally:
        os.unlink(path)


@router.get("/imports/{document_id}", response_model=ImportedDocumentOut)
def get_document(document_id: uuid.UUID, db: Session = Depends(get_db)):
    doc = db.get(ImportedDocument, document_id)
    if doc is None or doc.deleted_at is not None:
        raise NotFoundError("Document not found")
    return _doc_to_out(doc)


@router.post("/imports/{document_id}/parse", response_model=ParseResult)
async def parse_document(
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return await pipeline.parse_document(db, document_id)


@router.post("/imports/{document_id}/process", response_model=ProcessDocumentResult)
async def process_document(
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return await pipeline.process_document(db, document_id)


@router.post("/imports/{document_id}/review", response_model=ReviewDraftResult)
async def review_draft(
    document_id: uuid.UUID,
    payload: ReviewDraftRequest,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return await pipeline.review_draft(db, document_id, payload.items)


@router.post("/imports/{document_id}/confirm", response_model=ConfirmImportResult)
async def confirm_import(
    document_id: uuid.UUID,
    payload: ConfirmImportRequest,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return await pipeline.confirm_import(db, document_id, payload.items, vendor_name=payload.vendor_name)


# ---------------------------------------------------------------------------
# Interpretation and categories
# ---------------------------------------------------------------------------


@router.post("/imports/interpret", response_model=InterpretResult)
async def interpret_text(payload: InterpretRequest, pipeline: ImportPipeline = Depends(get_pipeline)):
    result = await pipeline.interpret(payload.raw_text)
    return InterpretResult(json_text=result.json_text, data=interpretation_out(result.data))


@router.post("/imports/suggest-category", response_model=CategorySuggestionOut)
async def suggest_category(
    payload: SuggestCategoryRequest,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    suggestion = await pipeline.suggest_category(
        db,
        payload.vendor_name,
        payload.raw_text,
        [item.description for item in payload.line_items if item.description],
    )
    return suggestion_out(suggestion)


@router.post("/imports/vendor-rules", response_model=VendorRuleOut)
async def add_vendor_rule(
    payload: VendorRuleCreate,
    db: Session = Depends(get_db),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    rule = await pipeline.add_vendor_rule(db, payload.keyword, payload.category_id, payload.confidence)
    return _rule_to_out(rule)
