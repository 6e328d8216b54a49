"""Invoice interpretation contracts.

``InvoiceInterpretation`` is the strict projection of whatever JSON tree the
model returned. The heuristic baseline uses the same shape so callers do not
need to special-case where a value came from.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class InvoiceLineItem(BaseModel):
    description: str
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None


class InvoiceInterpretation(BaseModel):
    vendor_name: str
    invoice_date: date
    total_amount: Decimal
    currency: str
    notes: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    line_items: Optional[list[InvoiceLineItem]] = None


class InvoiceInterpretationResult(BaseModel):
    """Accepted JSON text plus its parsed form."""

    json_text: str
    data: InvoiceInterpretation
    heuristic: Optional[InvoiceInterpretation] = None
