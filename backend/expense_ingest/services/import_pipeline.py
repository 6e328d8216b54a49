"""Document ingestion use cases: import, parse, interpret, suggest, review, confirm.

The pipeline owns every ``ImportedDocument`` status change. Each public
operation either returns a plain payload or raises an ``IngestError``;
database and filesystem faults are converted to ``StorageError`` here so no
other exception type leaves this module.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from expense_ingest.core.config import get_settings
from expense_ingest.core.errors import (
    ConflictError,
    IngestError,
    NotFoundError,
    StorageError,
    ValidationFailedError,
)
from expense_ingest.core.storage import ContentAddressedStore
from expense_ingest.models.documents import (
    EXPENSE_DESCRIPTION_MAX_LENGTH,
    FILE_NAME_MAX_LENGTH,
    Category,
    Expense,
    ImportedDocument,
    VendorCategoryRule,
)
from expense_ingest.schemas.imports import (
    CategorySuggestionOut,
    ConfirmImportResult,
    ExpenseDraftItem,
    ImportedDocumentStatus,
    ImportResult,
    InvoiceInterpretationOut,
    ParseResult,
    ProcessDocumentResult,
    ReviewDraftResult,
    ReviewedDraftItem,
)
from expense_ingest.schemas.values import HEURISTIC_CONFIDENCE, ConfidenceScore
from expense_ingest.services.ai.categorize.cache import CategoryCatalogCache, make_session_loader
from expense_ingest.services.ai.categorize.contracts import CategorySuggestion
from expense_ingest.services.ai.categorize.service import CategorySuggestionEngine
from expense_ingest.services.ai.common.interpreter import LlmJsonInterpreter
from expense_ingest.services.ai.invoice.contracts import InvoiceInterpretation, InvoiceInterpretationResult
from expense_ingest.services.ai.invoice.service import InvoiceInterpreter
from expense_ingest.services.audit import ENTITY_DOCUMENT, create_audit_log
from expense_ingest.services.document_transitions import mark_confirmed, mark_failed, mark_parsed
from expense_ingest.services.heuristics import build_drafts, infer_vendor, overall_confidence
from expense_ingest.services.text_extraction import DocumentTextExtractor

if TYPE_CHECKING:
    import httpx

    from expense_ingest.services.ai.common.local_runtime import LocalLlmRuntime

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _rollback_session(args, kwargs) -> None:
    # Failure paths that must persist state commit before raising.
    for value in (*args, *kwargs.values()):
        if isinstance(value, Session):
            value.rollback()
            return


def pipeline_operation(func):
    """Roll back on failure and convert database and filesystem faults into ``StorageError``."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except IngestError:
            _rollback_session(args, kwargs)
            raise
        except (SQLAlchemyError, OSError) as exc:
            _rollback_session(args, kwargs)
            logger.exception("%s failed with a storage fault", func.__name__)
            raise StorageError(f"{func.__name__} failed: storage fault") from exc

    return wrapper


def _as_uuid(value: uuid.UUID | str, what: str = "Document id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationFailedError(f"{what} is not a valid identifier") from exc


def interpretation_out(data: InvoiceInterpretation) -> InvoiceInterpretationOut:
    return InvoiceInterpretationOut.model_validate(data.model_dump())


def suggestion_out(suggestion: CategorySuggestion) -> CategorySuggestionOut:
    return CategorySuggestionOut(
        category_id=str(suggestion.category_id) if suggestion.category_id else None,
        category_name=suggestion.category_name,
        confidence=suggestion.confidence,
        rationale=suggestion.rationale,
        source=suggestion.source,
    )


def build_items_from_interpretation(data: Optional[InvoiceInterpretation]) -> list[ExpenseDraftItem]:
    """Turn interpreted line items into drafts dated with the invoice date."""
    if data is None or not data.line_items:
        return []
    items = []
    for line in data.line_items:
        description = (line.description or "").strip()
        amount = line.total_price if line.total_price is not None else line.unit_price
        if not description or amount is None or amount <= 0:
            continue
        items.append(
            ExpenseDraftItem(
                expense_date=data.invoice_date,
                amount=amount,
                description=description,
                confidence=HEURISTIC_CONFIDENCE,
            )
        )
    return items


def stamp_suggestion(items: Sequence[ExpenseDraftItem], suggestion: Optional[CategorySuggestion]) -> list[ExpenseDraftItem]:
    if suggestion is None or not suggestion.has_category:
        return list(items)
    return [
        item.model_copy(
            update={
                "category_id": suggestion.category_id,
                "category_name": suggestion.category_name,
                "confidence": suggestion.confidence,
            }
        )
        for item in items
    ]


class ImportPipeline:
    def __init__(
        self,
        store: ContentAddressedStore,
        extractor: DocumentTextExtractor,
        interpreter: InvoiceInterpreter,
        suggestions: CategorySuggestionEngine,
        *,
        learned_rule_confidence: float = 0.7,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.interpreter = interpreter
        self.suggestions = suggestions
        self.learned_rule_confidence = learned_rule_confidence

    @classmethod
    def from_settings(
        cls,
        session_factory: Optional[sessionmaker] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        runtime: Optional[LocalLlmRuntime] = None,
    ) -> ImportPipeline:
        settings = get_settings()
        llm = LlmJsonInterpreter(transport=transport, runtime=runtime)
        catalog = CategoryCatalogCache(
            make_session_loader(session_factory),
            ttl_seconds=settings.category_cache_seconds,
        )
        return cls(
            ContentAddressedStore.from_settings(),
            DocumentTextExtractor.from_settings(),
            InvoiceInterpreter.from_settings(llm),
            CategorySuggestionEngine.from_settings(llm, catalog),
            learned_rule_confidence=settings.learned_rule_confidence,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_document(db: Session, document_id: uuid.UUID | str) -> ImportedDocument:
        document = db.get(ImportedDocument, _as_uuid(document_id))
        if document is None or document.deleted_at is not None:
            raise NotFoundError("Document not found")
        return document

    @staticmethod
    def _validate_items(
        db: Session,
        items: Sequence[ExpenseDraftItem],
        *,
        require_items: bool,
    ) -> list[ExpenseDraftItem]:
        """Check every item before anything is written; the first problem wins."""
        if require_items and not items:
            raise ValidationFailedError("At least one item is required")

        known_categories: set[uuid.UUID] = set()
        validated = []
        for index, item in enumerate(items, start=1):
            if not isinstance(item.expense_date, date):
                raise ValidationFailedError(f"Item {index}: date is required")
            if item.amount is None or not item.amount.is_finite() or item.amount <= 0:
                raise ValidationFailedError(f"Item {index}: amount must be greater than zero")
            try:
                ConfidenceScore.create(item.confidence)
            except ValidationFailedError as exc:
                raise ValidationFailedError(f"Item {index}: {exc.message}") from exc
            description = (item.description or "").strip() or None
            if description and len(description) > EXPENSE_DESCRIPTION_MAX_LENGTH:
                raise ValidationFailedError(
                    f"Item {index}: description must be at most {EXPENSE_DESCRIPTION_MAX_LENGTH} characters"
                )
            if item.category_id is not None and item.category_id not in known_categories:
                if db.get(Category, item.category_id) is None:
                    raise ValidationFailedError(f"Item {index}: category not found")
                known_categories.add(item.category_id)
            validated.append(
                item.model_copy(
                    update={
                        "amount": item.amount.quantize(CENTS, rounding=ROUND_HALF_UP),
                        "description": description,
                    }
                )
            )
        return validated

    # ------------------------------------------------------------------
    # Use cases
    # ------------------------------------------------------------------

    @pipeline_operation
    async def import_document(self, db: Session, source_path: str, original_name: str) -> ImportResult:
        name = (original_name or "").strip()
        if not source_path or not str(source_path).strip():
            raise ValidationFailedError("Source file path is required")
        if not name:
            raise ValidationFailedError("Original file name is required")
        if len(name) > FILE_NAME_MAX_LENGTH:
            raise ValidationFailedError(f"File name must be at most {FILE_NAME_MAX_LENGTH} characters")

        stored = await self.store.save(source_path, name)
        content_hash = stored.content_hash.value

        existing = db.execute(
            select(ImportedDocument).where(
                ImportedDocument.content_hash == content_hash,
                ImportedDocument.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if existing is not None:
            self.store.delete(stored.stored_name)
            create_audit_log(
                db,
                entity_type=ENTITY_DOCUMENT,
                entity_id=existing.id,
                action="DOCUMENT_DUPLICATE_REJECTED",
                metadata={"original_file_name": name, "content_hash": content_hash},
            )
            db.commit()
            logger.info("Duplicate import of %s rejected (document %s)", name, existing.id)
            raise ConflictError("Document already imported", details={"document_id": str(existing.id)})

        document = ImportedDocument(
            original_file_name=name,
            stored_file_name=stored.stored_name,
            file_extension=stored.extension,
            size_bytes=stored.size_bytes,
            content_hash=content_hash,
            status=ImportedDocumentStatus.UPLOADED.value,
            is_ocr_used=False,
        )
        db.add(document)
        try:
            db.flush()
            create_audit_log(
                db,
                entity_type=ENTITY_DOCUMENT,
                entity_id=document.id,
                action="DOCUMENT_IMPORTED",
                new_value={"status": document.status, "content_hash": content_hash},
                metadata={"original_file_name": name, "size_bytes": stored.size_bytes},
            )
            db.commit()
        except IntegrityError as exc:
            # Lost a race against a concurrent import of the same bytes.
            db.rollback()
            self.store.delete(stored.stored_name)
            raise ConflictError("Document already imported") from exc

        logger.info("Imported %s as document %s", name, document.id)
        return ImportResult(
            document_id=str(document.id),
            stored_file_name=document.stored_file_name,
            file_extension=document.file_extension,
            size_bytes=document.size_bytes,
            content_hash=content_hash,
        )

    @pipeline_operation
    async def parse_document(self, db: Session, document_id: uuid.UUID | str) -> ParseResult:
        document = self._get_document(db, document_id)
        if document.status == ImportedDocumentStatus.CONFIRMED.value:
            raise ConflictError("Document is already confirmed")

        try:
            content = await asyncio.to_thread(self.store.read_bytes, document.stored_file_name)
            extraction = await self.extractor.extract(
                document.stored_file_name,
                document.file_extension,
                content,
            )
        except IngestError as exc:
            logger.warning("Parsing document %s failed: %s (%s)", document.id, exc.message, exc.kind.value)
            mark_failed(db, document, exc.message, error_kind=exc.kind.value)
            db.commit()
            raise

        items = build_drafts(extraction.raw_text)
        mark_parsed(db, document, is_ocr_used=extraction.is_ocr_used)
        db.commit()

        return ParseResult(
            document_id=str(document.id),
            raw_text=extraction.raw_text,
            page_texts=extraction.page_texts,
            is_ocr_used=extraction.is_ocr_used,
            items=items,
            overall_confidence=overall_confidence(items),
        )

    async def interpret(self, raw_text: str) -> InvoiceInterpretationResult:
        if not raw_text or not raw_text.strip():
            raise ValidationFailedError("Raw text is required")
        return await self.interpreter.interpret(raw_text)

    @pipeline_operation
    async def suggest_category(
        self,
        db: Session,
        vendor_name: str,
        raw_text: str,
        line_items: Sequence[str] = (),
    ) -> CategorySuggestion:
        if not (vendor_name or "").strip() and not (raw_text or "").strip():
            raise ValidationFailedError("Vendor name or raw text is required")
        return await self.suggestions.suggest(db, vendor_name or "", raw_text or "", line_items)

    @pipeline_operation
    async def add_vendor_rule(
        self,
        db: Session,
        keyword: str,
        category_id: uuid.UUID | str,
        confidence: float,
    ) -> VendorCategoryRule:
        rule, _ = self.suggestions.learn_vendor_rule(
            db,
            keyword,
            _as_uuid(category_id, "Category id"),
            confidence,
        )
        db.commit()
        return rule

    @pipeline_operation
    async def review_draft(
        self,
        db: Session,
        document_id: uuid.UUID | str,
        items: Sequence[ExpenseDraftItem],
    ) -> ReviewDraftResult:
        document = self._get_document(db, document_id)
        validated = self._validate_items(db, items, require_items=False)
        total = sum((item.amount for item in validated), Decimal("0"))
        logger.info("Reviewing %d draft item(s) for document %s", len(validated), document.id)
        return ReviewDraftResult(
            document_id=str(document.id),
            items=[ExpenseDraftItem.model_validate(item.model_dump()) for item in validated],
            total_amount=total,
            overall_confidence=overall_confidence(validated),
        )

    @pipeline_operation
    async def confirm_import(
        self,
        db: Session,
        document_id: uuid.UUID | str,
        items: Sequence[ExpenseDraftItem],
        *,
        vendor_name: Optional[str] = None,
    ) -> ConfirmImportResult:
        document = self._get_document(db, document_id)
        status = ImportedDocumentStatus(document.status)

        if status == ImportedDocumentStatus.CONFIRMED:
            logger.info("Document %s already confirmed; nothing to do", document.id)
            return ConfirmImportResult(
                document_id=str(document.id),
                created_expenses_count=0,
                already_confirmed=True,
            )
        if status != ImportedDocumentStatus.PARSED:
            raise ConflictError(
                f"Document must be parsed before confirmation (status {status.value})",
                details={"status": status.value},
            )

        validated = self._validate_items(db, items, require_items=True)
        keyword = (vendor_name or "").strip()
        overridden = self._overridden_categories(items) if keyword else []
        if overridden:
            self.suggestions.check_keyword(keyword)

        expense_ids: list[str] = []
        for item in validated:
            expense = Expense(
                expense_date=item.expense_date,
                amount=item.amount,
                description=item.description,
                category_id=item.category_id,
                document_id=document.id,
            )
            db.add(expense)
            db.flush()
            expense_ids.append(str(expense.id))

        learned: list[str] = []
        for category_id in overridden:
            rule, _ = self.suggestions.learn_vendor_rule(
                db,
                keyword,
                category_id,
                self.learned_rule_confidence,
            )
            if str(rule.id) not in learned:
                learned.append(str(rule.id))

        mark_confirmed(db, document, created_count=len(expense_ids))
        db.commit()
        logger.info("Document %s confirmed with %d expense(s)", document.id, len(expense_ids))

        return ConfirmImportResult(
            document_id=str(document.id),
            created_expenses_count=len(expense_ids),
            created_expense_ids=expense_ids,
            learned_rule_ids=learned,
        )

    @staticmethod
    def _overridden_categories(items: Sequence[ExpenseDraftItem]) -> list[uuid.UUID]:
        chosen: list[uuid.UUID] = []
        for item in items:
            suggested = item.suggested_category_id if isinstance(item, ReviewedDraftItem) else None
            if item.category_id is None or item.category_id == suggested:
                continue
            if item.category_id not in chosen:
                chosen.append(item.category_id)
        return chosen

    async def process_document(self, db: Session, document_id: uuid.UUID | str) -> ProcessDocumentResult:
        """Parse, interpret and suggest in one call, returning ready-to-review drafts.

        Only parsing is mandatory. A failed interpretation falls back to the
        heuristic drafts and a failed suggestion leaves items uncategorised.
        """
        parsed = await self.parse_document(db, document_id)

        data: Optional[InvoiceInterpretation] = None
        interpretation_error: Optional[dict[str, Any]] = None
        if parsed.raw_text.strip():
            try:
                data = (await self.interpret(parsed.raw_text)).data
            except IngestError as exc:
                logger.warning("Interpretation of document %s failed: %s", parsed.document_id, exc.message)
                interpretation_error = {"error": exc.kind.value, "detail": exc.message, **exc.details}

        vendor = data.vendor_name if data else infer_vendor(parsed.raw_text)
        descriptions = [line.description for line in (data.line_items or [])] if data else []

        suggestion: Optional[CategorySuggestion] = None
        try:
            suggestion = await self.suggest_category(db, vendor, parsed.raw_text, descriptions)
        except IngestError as exc:
            logger.warning("Category suggestion for document %s failed: %s", parsed.document_id, exc.message)

        items = build_items_from_interpretation(data) or parsed.items
        items = stamp_suggestion(items, suggestion)

        return ProcessDocumentResult(
            document_id=parsed.document_id,
            raw_text=parsed.raw_text,
            is_ocr_used=parsed.is_ocr_used,
            interpretation=interpretation_out(data) if data else None,
            interpretation_error=interpretation_error,
            suggestion=suggestion_out(suggestion) if suggestion else None,
            items=items,
            overall_confidence=overall_confidence(items),
        )
