"""Category suggestion engine.

Order of evaluation, first hit wins:

1. learned vendor rules (highest confidence among matching keywords),
2. keyword overlap between category names and the document text,
3. an LLM call over the cached category catalog.

The engine is also the only writer of ``VendorCategoryRule`` rows.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_ingest.core.config import get_settings
from expense_ingest.core.errors import LlmRequiredError, NotFoundError, ValidationFailedError
from expense_ingest.models.documents import KEYWORD_MAX_LENGTH, Category, VendorCategoryRule, utcnow
from expense_ingest.schemas.imports import SuggestionSource
from expense_ingest.schemas.values import ConfidenceScore
from expense_ingest.services.ai.categorize.cache import CategoryCatalogCache
from expense_ingest.services.ai.categorize.contracts import CategoryOption, CategorySuggestion
from expense_ingest.services.ai.common.interpreter import LlmJsonInterpreter
from expense_ingest.services.ai.common.json_tools import load_json_tree
from expense_ingest.services.audit import ENTITY_VENDOR_RULE, create_audit_log
from expense_ingest.services.keywords import normalize_keyword

logger = logging.getLogger(__name__)

JSON_PLACEHOLDER = "{{json}}"

VENDOR_MATCH_CONFIDENCE = 0.85
LINE_ITEM_MATCH_CONFIDENCE = 0.7
TEXT_MATCH_CONFIDENCE = 0.65


def _rule_snapshot(rule: VendorCategoryRule) -> dict[str, Any]:
    return {
        "keyword": rule.keyword,
        "category_id": str(rule.category_id),
        "confidence": rule.confidence,
    }


def suggest_from_heuristics(
    catalog: Sequence[CategoryOption],
    vendor_name: str,
    raw_text: str,
    line_items: Sequence[str] = (),
) -> CategorySuggestion:
    """Score category names against vendor, line items and text.

    A category name found in the vendor scores 0.85, in a line item 0.70 and
    anywhere else in the text 0.65. The first category reaching the best
    score keeps it.
    """
    vendor = normalize_keyword(vendor_name)
    text = normalize_keyword(raw_text)
    items = [normalize_keyword(item) for item in line_items]

    best: Optional[CategoryOption] = None
    best_score = 0.0
    reason = ""
    for category in catalog:
        name = category.normalized_name
        if not name:
            continue
        if name in vendor:
            score, why = VENDOR_MATCH_CONFIDENCE, "Vendor match"
        elif name in text:
            score, why = TEXT_MATCH_CONFIDENCE, "Text match"
        elif any(name in item for item in items):
            score, why = LINE_ITEM_MATCH_CONFIDENCE, "Line item match"
        else:
            continue
        if best_score < score:
            best, best_score, reason = category, score, why

    return CategorySuggestion(
        category_id=best.id if best else None,
        category_name=best.name if best else None,
        confidence=best_score,
        rationale=reason or "No heuristic match",
        source=SuggestionSource.HEURISTIC,
    )


def parse_category_json(json_text: str, catalog: Sequence[CategoryOption]) -> CategorySuggestion:
    """Project the model's answer; an id that is not a known UUID means no suggestion."""
    try:
        root = load_json_tree(json_text)
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid JSON: {exc}") from exc
    if not isinstance(root, dict):
        raise ValidationFailedError("Invalid JSON")

    raw_confidence = root.get("confidence", 0)
    if raw_confidence is None:
        raw_confidence = 0
    try:
        confidence = ConfidenceScore.create(float(raw_confidence)).value
    except (TypeError, ValueError) as exc:
        raise ValidationFailedError("Invalid confidence") from exc

    rationale = root.get("rationale")
    rationale = rationale if isinstance(rationale, str) else ""

    by_id = {option.id: option for option in catalog}
    category: Optional[CategoryOption] = None
    raw_id = root.get("categoryId")
    if isinstance(raw_id, str) and raw_id.strip():
        try:
            category = by_id.get(uuid.UUID(raw_id.strip()))
        except ValueError:
            category = None
        if category is None:
            logger.info("LLM suggested unknown category id %r", raw_id)

    return CategorySuggestion(
        category_id=category.id if category else None,
        category_name=category.name if category else None,
        confidence=confidence,
        rationale=rationale,
        source=SuggestionSource.LLM,
    )


class CategorySuggestionEngine:
    def __init__(
        self,
        llm: LlmJsonInterpreter,
        catalog: CategoryCatalogCache,
        *,
        enable_llm: bool = True,
        min_heuristic_confidence: float = 0.6,
        system_prompt: str = "",
        user_prompt_template: str = "",
    ) -> None:
        self.llm = llm
        self.catalog = catalog
        self.enable_llm = enable_llm
        self.min_heuristic_confidence = min_heuristic_confidence
        self.system_prompt = system_prompt
        self.user_prompt_template = user_prompt_template

    @classmethod
    def from_settings(cls, llm: LlmJsonInterpreter, catalog: CategoryCatalogCache) -> CategorySuggestionEngine:
        settings = get_settings()
        return cls(
            llm,
            catalog,
            enable_llm=settings.category_enable_llm,
            min_heuristic_confidence=settings.category_min_heuristic_confidence,
            system_prompt=settings.category_system_prompt,
            user_prompt_template=settings.category_user_prompt_template,
        )

    async def suggest(
        self,
        db: Session,
        vendor_name: str,
        raw_text: str,
        line_items: Sequence[str] = (),
    ) -> CategorySuggestion:
        ruled = self.suggest_from_rules(db, vendor_name, raw_text)
        if ruled is not None:
            return ruled

        catalog = await self.catalog.get()

        heuristic = suggest_from_heuristics(catalog, vendor_name, raw_text, line_items)
        if heuristic.has_category and heuristic.confidence >= self.min_heuristic_confidence:
            return heuristic

        if not self.enable_llm:
            raise LlmRequiredError("LLM is required for category suggestion")

        if not catalog:
            raise NotFoundError("No categories available")

        json_text = await self.llm.generate_json(
            self.system_prompt,
            self.build_user_prompt(vendor_name, raw_text, line_items, catalog),
        )
        return parse_category_json(json_text, catalog)

    def build_user_prompt(
        self,
        vendor_name: str,
        raw_text: str,
        line_items: Sequence[str],
        catalog: Sequence[CategoryOption],
    ) -> str:
        payload = {
            "vendorName": vendor_name,
            "rawText": raw_text,
            "lineItems": list(line_items),
            "categories": [{"id": str(option.id), "name": option.name} for option in catalog],
        }
        template = self.user_prompt_template.strip() or get_settings().category_user_prompt_template
        return template.replace(JSON_PLACEHOLDER, json.dumps(payload, ensure_ascii=False))

    def suggest_from_rules(self, db: Session, vendor_name: str, raw_text: str) -> Optional[CategorySuggestion]:
        vendor = normalize_keyword(vendor_name)
        text = normalize_keyword(raw_text)
        if not vendor and not text:
            return None

        rules = db.execute(select(VendorCategoryRule).where(VendorCategoryRule.is_active.is_(True))).scalars().all()

        best: Optional[VendorCategoryRule] = None
        for rule in rules:
            keyword = rule.keyword_normalized
            if not keyword:
                continue
            if keyword in vendor or keyword in text:
                if best is None or rule.confidence > best.confidence:
                    best = rule

        if best is None:
            return None

        best.last_used_at = utcnow()
        db.commit()
        logger.info("Vendor rule %s matched (keyword=%r)", best.id, best.keyword_normalized)

        category = db.get(Category, best.category_id)
        return CategorySuggestion(
            category_id=best.category_id,
            category_name=category.name if category else None,
            confidence=best.confidence,
            rationale="Vendor rule",
            source=SuggestionSource.RULE,
            rule_id=best.id,
        )

    @staticmethod
    def check_keyword(keyword: str) -> tuple[str, str]:
        """Return ``(keyword, normalized)`` or raise ``ValidationFailedError``."""
        raw_keyword = (keyword or "").strip()
        normalized = normalize_keyword(raw_keyword)
        if not normalized:
            raise ValidationFailedError("Keyword is required")
        if len(raw_keyword) > KEYWORD_MAX_LENGTH or len(normalized) > KEYWORD_MAX_LENGTH:
            raise ValidationFailedError(f"Keyword must be at most {KEYWORD_MAX_LENGTH} characters")
        return raw_keyword, normalized

    def learn_vendor_rule(
        self,
        db: Session,
        keyword: str,
        category_id: uuid.UUID,
        confidence: float,
    ) -> tuple[VendorCategoryRule, bool]:
        """Create a rule for *keyword* or reinforce the existing one.

        Reinforcing replaces the category, overwrites the confidence and
        touches ``last_used_at``. Returns ``(rule, created)``; the caller
        commits.
        """
        raw_keyword, normalized = self.check_keyword(keyword)
        score = ConfidenceScore.create(confidence).value
        if db.get(Category, category_id) is None:
            raise NotFoundError("Category not found")

        rule = db.execute(
            select(VendorCategoryRule).where(VendorCategoryRule.keyword_normalized == normalized)
        ).scalar_one_or_none()

        if rule is not None:
            before = _rule_snapshot(rule)
            rule.keyword = raw_keyword
            rule.category_id = category_id
            rule.confidence = score
            rule.is_active = True
            rule.last_used_at = utcnow()
            db.flush()
            create_audit_log(
                db,
                entity_type=ENTITY_VENDOR_RULE,
                entity_id=rule.id,
                action="VENDOR_RULE_REINFORCED",
                old_value=before,
                new_value=_rule_snapshot(rule),
            )
            logger.info("Vendor rule %r reinforced -> %s (%.2f)", normalized, category_id, score)
            return rule, False

        now = utcnow()
        rule = VendorCategoryRule(
            keyword=raw_keyword,
            keyword_normalized=normalized,
            category_id=category_id,
            confidence=score,
            is_active=True,
            created_at=now,
            last_used_at=now,
        )
        db.add(rule)
        db.flush()
        create_audit_log(
            db,
            entity_type=ENTITY_VENDOR_RULE,
            entity_id=rule.id,
            action="VENDOR_RULE_CREATED",
            new_value=_rule_snapshot(rule),
        )
        logger.info("Vendor rule %r created -> %s (%.2f)", normalized, category_id, score)
        return rule, True
