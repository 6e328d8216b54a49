"""Small validated value objects shared by heuristics, the LLM layer and the pipeline."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from expense_ingest.core.errors import ValidationFailedError

HEURISTIC_CONFIDENCE = 0.6
HEURISTIC_INTERPRETATION_CONFIDENCE = 0.4

_HEX_64 = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class DocumentHash:
    """SHA-256 digest of a document's bytes, stored as 64 lowercase hex chars."""

    value: str

    @classmethod
    def create(cls, raw: str | None) -> DocumentHash:
        normalized = (raw or "").strip().lower()
        if not _HEX_64.match(normalized):
            raise ValidationFailedError("Document hash must be 64 hexadecimal characters")
        return cls(normalized)

    @classmethod
    def from_storage(cls, stored: str) -> DocumentHash:
        return cls.create(stored)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ConfidenceScore:
    value: float

    @classmethod
    def create(cls, raw: float | int | None) -> ConfidenceScore:
        if raw is None or isinstance(raw, bool):
            raise ValidationFailedError("Confidence is required")
        value = float(raw)
        if math.isnan(value) or math.isinf(value):
            raise ValidationFailedError("Confidence must be a finite number")
        if value < 0.0 or value > 1.0:
            raise ValidationFailedError("Confidence must be between 0 and 1")
        return cls(value)

    def __float__(self) -> float:
        return self.value
