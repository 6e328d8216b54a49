"""Regex heuristics that mine dates and amounts out of raw OCR text.

Everything here is pure: no I/O, no exceptions on malformed input.
Fragments that do not parse are skipped.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from expense_ingest.schemas.imports import ExpenseDraftItem
from expense_ingest.schemas.values import HEURISTIC_CONFIDENCE, HEURISTIC_INTERPRETATION_CONFIDENCE
from expense_ingest.services.ai.invoice.contracts import InvoiceInterpretation

AMOUNT_RE = re.compile(r"(\d{1,3}(?:[.\s]\d{3})*,\d{2})|(\d+\.\d{2})", re.ASCII)
DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2,4})", re.ASCII)

UNKNOWN_VENDOR = "Unknown"
HEURISTIC_NOTES = "Heuristic"

# Checked in order; "R$" must win over the bare "$".
CURRENCY_SYMBOLS = (
    ("R$", "BRL"),
    ("$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
)


def parse_amount(raw: str) -> Optional[Decimal]:
    normalized = raw.strip()
    if "," in normalized:
        normalized = normalized.replace(".", "").replace(",", ".")
    normalized = re.sub(r"\s+", "", normalized)
    try:
        value = Decimal(normalized)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def extract_amounts(text: str) -> list[Decimal]:
    amounts = []
    for match in AMOUNT_RE.finditer(text or ""):
        value = parse_amount(match.group(0))
        if value is not None:
            amounts.append(value)
    return amounts


def _to_date(day: str, month: str, year: str) -> Optional[date]:
    y = int(year)
    if y < 100:
        y += 2000
    try:
        return date(y, int(month), int(day))
    except ValueError:
        return None


def extract_dates(text: str) -> list[date]:
    dates = []
    for match in DATE_RE.finditer(text or ""):
        parsed = _to_date(*match.groups())
        if parsed is not None:
            dates.append(parsed)
    return dates


def build_drafts(raw_text: str, today: Optional[date] = None) -> list[ExpenseDraftItem]:
    """Pair the i-th amount with the i-th date.

    Extra amounts fall back to the first date found, or ``today`` when the
    text has no date at all.
    """
    if not raw_text or not raw_text.strip():
        return []

    amounts = [amount for amount in extract_amounts(raw_text) if amount > 0]
    if not amounts:
        return []

    dates = extract_dates(raw_text)
    fallback = dates[0] if dates else (today or date.today())

    return [
        ExpenseDraftItem(
            expense_date=dates[i] if i < len(dates) else fallback,
            amount=amount,
            confidence=HEURISTIC_CONFIDENCE,
        )
        for i, amount in enumerate(amounts)
    ]


def overall_confidence(items: Sequence[ExpenseDraftItem]) -> float:
    if not items:
        return 0.0
    return sum(item.confidence for item in items) / len(items)


def infer_vendor(raw_text: str) -> str:
    for line in (raw_text or "").splitlines():
        if len(line) >= 3 and line.strip():
            return line.strip()
    return UNKNOWN_VENDOR


def infer_currency(raw_text: str, default: str = "BRL") -> str:
    text = (raw_text or "").upper()
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return default


def build_heuristic_interpretation(
    raw_text: str,
    *,
    default_currency: str = "BRL",
    today: Optional[date] = None,
) -> InvoiceInterpretation:
    dates = extract_dates(raw_text)
    amounts = extract_amounts(raw_text)
    return InvoiceInterpretation(
        vendor_name=infer_vendor(raw_text),
        invoice_date=dates[0] if dates else (today or date.today()),
        total_amount=max(amounts) if amounts else Decimal("0"),
        currency=infer_currency(raw_text, default_currency),
        notes=HEURISTIC_NOTES,
        confidence=HEURISTIC_INTERPRETATION_CONFIDENCE,
        line_items=None,
    )
