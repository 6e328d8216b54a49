"""Invoice interpretation: heuristic baseline plus an LLM pass.

The LLM pass is mandatory; the heuristic baseline is computed on every call
and travels with both the result and any failure so callers always have a
fallback value to show.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from expense_ingest.core.config import get_settings
from expense_ingest.core.errors import IngestError, LlmRequiredError, ValidationFailedError
from expense_ingest.services.ai.common.interpreter import LlmJsonInterpreter
from expense_ingest.services.ai.common.json_tools import load_json_tree, preview, remove_line_items
from expense_ingest.services.ai.invoice.contracts import (
    InvoiceInterpretation,
    InvoiceInterpretationResult,
    InvoiceLineItem,
)
from expense_ingest.services.heuristics import build_heuristic_interpretation

logger = logging.getLogger(__name__)

TEXT_PLACEHOLDER = "{{text}}"

_ISO_DATE_RE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[T\s].*)?$")
_DAY_FIRST_DATE_RE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})$")
_NUMBER_STRING_RE = re.compile(r"^[-+]?[\d.,]+$")


def _get_string(node: dict[str, Any], key: str) -> Optional[str]:
    value = node.get(key)
    return value if isinstance(value, str) else None


def parse_number_string(value: str) -> Optional[Decimal]:
    """Parse an amount sent as a string in either ``1,234.56`` or ``1.234,56`` form.

    With both separators present the last one is the decimal mark. A lone
    comma is a decimal mark only when exactly two digits follow it; any
    other comma-only string is ambiguous and returns None.
    """
    text = re.sub(r"\s+", "", value or "")
    if not _NUMBER_STRING_RE.match(text):
        return None

    if "," in text and "." in text:
        decimal_mark = "," if text.rfind(",") > text.rfind(".") else "."
        group_mark = "." if decimal_mark == "," else ","
        whole, _, fraction = text.rpartition(decimal_mark)
        if decimal_mark in whole or group_mark in fraction:
            return None
        text = whole.replace(group_mark, "") + "." + fraction
    elif "," in text:
        whole, _, fraction = text.rpartition(",")
        if "," in whole or len(fraction) != 2:
            return None
        text = whole + "." + fraction

    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        parsed = Decimal(value)
    elif isinstance(value, float):
        parsed = Decimal(str(value))
    elif isinstance(value, str):
        parsed = parse_number_string(value)
        if parsed is None:
            return None
    else:
        return None
    return parsed if parsed.is_finite() else None


def _to_confidence(value: Any) -> float:
    # Missing or unparseable confidence counts as out of range.
    if value is None or isinstance(value, bool):
        return -1.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return -1.0
    return parsed if math.isfinite(parsed) else -1.0


def parse_invoice_date(value: Optional[str]) -> Optional[date]:
    """Accept ``YYYY-MM-DD`` (optionally with a time part) or day-first ``D/M/Y``."""
    text = (value or "").strip()
    if not text:
        return None

    iso = _ISO_DATE_RE.match(text)
    if iso:
        year, month, day = (int(part) for part in iso.groups())
    else:
        day_first = _DAY_FIRST_DATE_RE.match(text)
        if not day_first:
            return None
        day, month, year = (int(part) for part in day_first.groups())
        if year < 100:
            year += 2000

    try:
        return date(year, month, day)
    except ValueError:
        return None


def _parse_line_items(node: dict[str, Any]) -> Optional[list[InvoiceLineItem]]:
    raw_items = node.get("lineItems")
    if not isinstance(raw_items, list):
        return None

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        total = _to_decimal(raw.get("totalPrice"))
        if total is None:
            total = _to_decimal(raw.get("totalAmount"))
        items.append(
            InvoiceLineItem(
                description=_get_string(raw, "description") or _get_string(raw, "name") or "",
                quantity=_to_decimal(raw.get("quantity")),
                unit_price=_to_decimal(raw.get("unitPrice")),
                total_price=total,
            )
        )
    return items or None


def parse_interpretation(json_text: str) -> InvoiceInterpretation:
    """Project a loosely-shaped JSON document onto ``InvoiceInterpretation``.

    Raises ``ValidationFailedError`` with the first failed check.
    """
    if not json_text or not json_text.strip():
        raise ValidationFailedError("Empty JSON")

    try:
        root = load_json_tree(json_text)
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid JSON: {exc}") from exc

    if isinstance(root, list):
        root = root[0] if root else None
    if not isinstance(root, dict):
        raise ValidationFailedError("Invalid JSON root")

    vendor = _get_string(root, "vendorName")
    if not vendor or not vendor.strip():
        raise ValidationFailedError("Vendor is required")

    invoice_date = parse_invoice_date(_get_string(root, "invoiceDate"))
    if invoice_date is None:
        raise ValidationFailedError("Invalid invoice date")

    total = _to_decimal(root.get("totalAmount"))
    if total is None or total <= 0:
        raise ValidationFailedError("Total amount must be greater than zero")

    currency = _get_string(root, "currency")
    if not currency or not currency.strip():
        raise ValidationFailedError("Currency is required")

    confidence = _to_confidence(root.get("confidence"))
    if confidence < 0.0 or confidence > 1.0:
        raise ValidationFailedError("Confidence must be between 0 and 1")

    return InvoiceInterpretation(
        vendor_name=vendor.strip(),
        invoice_date=invoice_date,
        total_amount=total,
        currency=currency.strip().upper(),
        notes=_get_string(root, "notes") or "",
        confidence=confidence,
        line_items=_parse_line_items(root),
    )


class InvoiceInterpreter:
    def __init__(
        self,
        llm: LlmJsonInterpreter,
        *,
        enable_llm: bool = True,
        system_prompt: str = "",
        user_prompt_template: str = "",
        default_currency: str = "BRL",
    ) -> None:
        self.llm = llm
        self.enable_llm = enable_llm
        self.system_prompt = system_prompt
        self.user_prompt_template = user_prompt_template
        self.default_currency = default_currency

    @classmethod
    def from_settings(cls, llm: LlmJsonInterpreter) -> InvoiceInterpreter:
        settings = get_settings()
        return cls(
            llm,
            enable_llm=settings.invoice_enable_llm,
            system_prompt=settings.invoice_system_prompt,
            user_prompt_template=settings.invoice_user_prompt_template,
            default_currency=settings.default_currency,
        )

    def build_user_prompt(self, raw_text: str) -> str:
        template = self.user_prompt_template.strip() or get_settings().invoice_user_prompt_template
        return template.replace(TEXT_PLACEHOLDER, raw_text or "")

    async def interpret(self, raw_text: str) -> InvoiceInterpretationResult:
        heuristic = build_heuristic_interpretation(raw_text or "", default_currency=self.default_currency)
        heuristic_payload = heuristic.model_dump(mode="json")

        if not self.enable_llm:
            raise LlmRequiredError(
                "LLM is required for invoice interpretation",
                details={"heuristic": heuristic_payload},
            )

        try:
            json_text = await self.llm.generate_json(self.system_prompt, self.build_user_prompt(raw_text))
        except IngestError as exc:
            logger.warning("LLM invoice interpretation failed: %s", exc.message)
            exc.details.setdefault("heuristic", heuristic_payload)
            raise

        try:
            data = parse_interpretation(json_text)
        except ValidationFailedError as exc:
            logger.warning("LLM invoice JSON invalid: %s", exc.message)
            logger.warning("LLM invoice JSON preview: %s", preview(json_text))
            simplified = remove_line_items(json_text)
            if simplified != json_text:
                try:
                    data = parse_interpretation(simplified)
                except ValidationFailedError as retry_exc:
                    logger.warning("Retry without line items failed: %s", retry_exc.message)
                else:
                    logger.info("Invoice interpretation accepted after dropping line items")
                    return InvoiceInterpretationResult(json_text=simplified, data=data, heuristic=heuristic)
            exc.details.setdefault("heuristic", heuristic_payload)
            raise

        return InvoiceInterpretationResult(json_text=json_text, data=data, heuristic=heuristic)
