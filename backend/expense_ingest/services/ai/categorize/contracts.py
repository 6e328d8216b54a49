"""Category suggestion contracts."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional

from expense_ingest.schemas.imports import SuggestionSource


@dataclass(frozen=True)
class CategoryOption:
    """One catalog entry as seen by the suggestion engine."""

    id: uuid.UUID
    name: str
    normalized_name: str


@dataclass(frozen=True)
class CategorySuggestion:
    category_id: Optional[uuid.UUID]
    confidence: float
    rationale: str
    source: SuggestionSource
    category_name: Optional[str] = None
    rule_id: Optional[uuid.UUID] = None

    @property
    def has_category(self) -> bool:
        return self.category_id is not None
