from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ImportedDocumentStatus(StrEnum):
    UPLOADED = "UPLOADED"
    PARSED = "PARSED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class SuggestionSource(StrEnum):
    RULE = "RULE"
    HEURISTIC = "HEURISTIC"
    LLM = "LLM"


# --- Draft items ---


class ExpenseDraftItem(BaseModel):
    expense_date: date
    amount: Decimal
    description: Optional[str] = None
    category_id: Optional[UUID] = None
    category_name: Optional[str] = None
    confidence: float = 0.0


class ReviewedDraftItem(ExpenseDraftItem):
    # Category proposed by the engine before the user touched the item.
    suggested_category_id: Optional[UUID] = None


# --- Documents ---


class ImportedDocumentOut(BaseModel):
    id: str
    original_file_name: str
    stored_file_name: str
    file_extension: str
    size_bytes: int
    content_hash: str
    status: ImportedDocumentStatus
    is_ocr_used: bool = False
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class ImportResult(BaseModel):
    document_id: str
    stored_file_name: str
    file_extension: str
    size_bytes: int
    content_hash: str
    status: ImportedDocumentStatus = ImportedDocumentStatus.UPLOADED


class ParseResult(BaseModel):
    document_id: str
    raw_text: str
    page_texts: list[str] = Field(default_factory=list)
    is_ocr_used: bool = False
    items: list[ExpenseDraftItem] = Field(default_factory=list)
    overall_confidence: float = 0.0


# --- Interpretation ---


class InterpretRequest(BaseModel):
    raw_text: str = Field(..., min_length=1)


class InvoiceLineItemOut(BaseModel):
    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None


class InvoiceInterpretationOut(BaseModel):
    vendor_name: str
    invoice_date: date
    total_amount: Decimal
    currency: str
    notes: Optional[str] = None
    confidence: float
    line_items: Optional[list[InvoiceLineItemOut]] = None


class InterpretResult(BaseModel):
    json_text: str
    data: InvoiceInterpretationOut


# --- Category suggestion ---


class LineItemIn(BaseModel):
    description: str = ""
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None


class SuggestCategoryRequest(BaseModel):
    vendor_name: str = ""
    raw_text: str = ""
    line_items: list[LineItemIn] = Field(default_factory=list)


class CategorySuggestionOut(BaseModel):
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    confidence: float
    rationale: str = ""
    source: SuggestionSource


class VendorRuleCreate(BaseModel):
    keyword: str
    category_id: UUID
    confidence: float


class VendorRuleOut(BaseModel):
    id: str
    keyword: str
    keyword_normalized: str
    category_id: str
    confidence: float
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


# --- Review / confirm ---


class ReviewDraftRequest(BaseModel):
    items: list[ReviewedDraftItem] = Field(default_factory=list)


class ReviewDraftResult(BaseModel):
    document_id: str
    items: list[ExpenseDraftItem]
    total_amount: Decimal
    overall_confidence: float


class ConfirmImportRequest(BaseModel):
    vendor_name: Optional[str] = None
    items: list[ReviewedDraftItem] = Field(default_factory=list)


class ConfirmImportResult(BaseModel):
    document_id: str
    created_expenses_count: int
    created_expense_ids: list[str] = Field(default_factory=list)
    already_confirmed: bool = False
    learned_rule_ids: list[str] = Field(default_factory=list)


# --- End-to-end processing ---


class ProcessDocumentResult(BaseModel):
    document_id: str
    raw_text: str
    is_ocr_used: bool = False
    interpretation: Optional[InvoiceInterpretationOut] = None
    interpretation_error: Optional[dict[str, Any]] = None
    suggestion: Optional[CategorySuggestionOut] = None
    items: list[ExpenseDraftItem] = Field(default_factory=list)
    overall_confidence: float = 0.0


# --- Setup readiness ---


class ImportSetupItemStatus(BaseModel):
    key: str
    title: str
    name: str
    is_installed: bool
    is_required: bool
    detail: str


class ImportSetupStatus(BaseModel):
    ready: bool
    items: list[ImportSetupItemStatus]
