"""Tests for the category catalog cache, heuristics, vendor rules and LLM fallback."""

import asyncio
import json
import unittest
import uuid

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_ingest.core.errors import LlmRequiredError, NotFoundError, ValidationFailedError
from expense_ingest.models.documents import AuditLog, Base, Category, VendorCategoryRule
from expense_ingest.schemas.imports import SuggestionSource
from expense_ingest.services.ai.categorize.cache import CategoryCatalogCache, make_session_loader
from expense_ingest.services.ai.categorize.contracts import CategoryOption
from expense_ingest.services.ai.categorize.service import (
    CategorySuggestionEngine,
    parse_category_json,
    suggest_from_heuristics,
)
from expense_ingest.services.keywords import normalize_keyword


def _option(name: str) -> CategoryOption:
    return CategoryOption(id=uuid.uuid4(), name=name, normalized_name=normalize_keyword(name))


class _ScriptedLlm:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    async def generate_json(self, system_prompt, user_prompt):
        self.prompts.append(user_prompt)
        return self.answers.pop(0)


class _FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_catalog_refresh_is_single_flight():
    calls = []
    catalog = [_option("Food")]

    async def loader():
        calls.append(1)
        await asyncio.sleep(0.01)
        return catalog

    cache = CategoryCatalogCache(loader, ttl_seconds=300)
    results = await asyncio.gather(*(cache.get() for _ in range(5)))

    assert len(calls) == 1
    assert all(result == catalog for result in results)


@pytest.mark.asyncio
async def test_catalog_ttl_has_a_floor_and_expires():
    clock = _FakeClock()
    calls = []

    async def loader():
        calls.append(1)
        return [_option("Fuel")]

    cache = CategoryCatalogCache(loader, ttl_seconds=1, clock=clock)
    assert cache.ttl_seconds == 30

    await cache.get()
    clock.now += 29
    await cache.get()
    clock.now += 2
    await cache.get()

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_empty_catalog_is_never_fresh():
    calls = []

    async def loader():
        calls.append(1)
        return []

    cache = CategoryCatalogCache(loader)
    await cache.get()
    await cache.get()

    assert len(calls) == 2
    assert not cache.is_fresh()


@pytest.mark.asyncio
async def test_invalidate_forces_reload():
    async def loader():
        return [_option("Fuel")]

    cache = CategoryCatalogCache(loader)
    await cache.get()
    cache.invalidate()
    await cache.get()

    assert cache.refresh_count == 2


class HeuristicSuggestionTests(unittest.TestCase):
    def setUp(self):
        self.food = _option("Alimentação")
        self.fuel = _option("Combustível")
        self.catalog = [self.food, self.fuel]

    def test_vendor_match_scores_highest(self):
        result = suggest_from_heuristics(self.catalog, "Posto Combustivel Ltda", "alimentacao", [])
        self.assertEqual(result.category_id, self.fuel.id)
        self.assertEqual(result.confidence, 0.85)
        self.assertEqual(result.source, SuggestionSource.HEURISTIC)

    def test_line_item_match(self):
        result = suggest_from_heuristics(self.catalog, "Loja", "", ["Vale alimentacao"])
        self.assertEqual(result.category_id, self.food.id)
        self.assertEqual(result.confidence, 0.7)

    def test_text_match(self):
        result = suggest_from_heuristics(self.catalog, "Loja", "gasto com combustivel", [])
        self.assertEqual(result.category_id, self.fuel.id)
        self.assertEqual(result.confidence, 0.65)

    def test_no_match(self):
        result = suggest_from_heuristics(self.catalog, "Loja", "nada", [])
        self.assertFalse(result.has_category)
        self.assertEqual(result.confidence, 0.0)


class ParseCategoryJsonTests(unittest.TestCase):
    def setUp(self):
        self.food = _option("Food")
        self.catalog = [self.food]

    def test_known_id(self):
        text = json.dumps({"categoryId": str(self.food.id), "confidence": 0.9, "rationale": "groceries"})
        result = parse_category_json(text, self.catalog)
        self.assertEqual(result.category_id, self.food.id)
        self.assertEqual(result.category_name, "Food")
        self.assertEqual(result.source, SuggestionSource.LLM)

    def test_unknown_or_malformed_id_means_no_category(self):
        for raw in (str(uuid.uuid4()), "food", None):
            with self.subTest(raw=raw):
                result = parse_category_json(json.dumps({"categoryId": raw, "confidence": 0.5}), self.catalog)
                self.assertIsNone(result.category_id)
                self.assertEqual(result.confidence, 0.5)

    def test_confidence_out_of_range(self):
        with self.assertRaises(ValidationFailedError):
            parse_category_json('{"categoryId": null, "confidence": 2}', self.catalog)

    def test_non_object_root(self):
        with self.assertRaises(ValidationFailedError):
            parse_category_json("[1, 2]", self.catalog)


class CategorySuggestionEngineTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self.db = self.SessionLocal()

        self.food = Category(name="Food")
        self.travel = Category(name="Travel")
        self.db.add_all([self.food, self.travel])
        self.db.commit()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _engine(self, llm=None, **kwargs):
        catalog = CategoryCatalogCache(make_session_loader(self.SessionLocal))
        kwargs.setdefault("system_prompt", "system")
        kwargs.setdefault("user_prompt_template", "Input: {{json}}")
        return CategorySuggestionEngine(llm or _ScriptedLlm(), catalog, **kwargs)

    def test_rule_wins_and_touches_last_used(self):
        engine = self._engine()
        rule, created = engine.learn_vendor_rule(self.db, "Uber", self.travel.id, 0.9)
        self.db.commit()
        self.assertTrue(created)
        rule.last_used_at = None
        self.db.commit()

        result = asyncio.run(engine.suggest(self.db, "UBER *TRIP", "food court", []))

        self.assertEqual(result.source, SuggestionSource.RULE)
        self.assertEqual(result.category_id, self.travel.id)
        self.assertEqual(result.confidence, 0.9)
        self.assertEqual(result.rationale, "Vendor rule")
        self.db.refresh(rule)
        self.assertIsNotNone(rule.last_used_at)

    def test_highest_confidence_rule_wins(self):
        engine = self._engine()
        engine.learn_vendor_rule(self.db, "market", self.food.id, 0.6)
        engine.learn_vendor_rule(self.db, "super market", self.travel.id, 0.8)
        self.db.commit()

        result = asyncio.run(engine.suggest(self.db, "Super Market Central", "", []))
        self.assertEqual(result.category_id, self.travel.id)

    def test_heuristic_before_llm(self):
        llm = _ScriptedLlm()
        result = asyncio.run(self._engine(llm).suggest(self.db, "Food Hall", "", []))
        self.assertEqual(result.source, SuggestionSource.HEURISTIC)
        self.assertEqual(result.category_id, self.food.id)
        self.assertEqual(llm.prompts, [])

    def test_weak_heuristic_falls_through_to_llm(self):
        llm = _ScriptedLlm(json.dumps({"categoryId": str(self.travel.id), "confidence": 0.77, "rationale": "trip"}))
        engine = self._engine(llm, min_heuristic_confidence=0.8)

        result = asyncio.run(engine.suggest(self.db, "Airline", "in-flight food", []))

        self.assertEqual(result.source, SuggestionSource.LLM)
        self.assertEqual(result.category_id, self.travel.id)
        payload = json.loads(llm.prompts[0].removeprefix("Input: "))
        self.assertEqual(payload["vendorName"], "Airline")
        self.assertEqual({c["name"] for c in payload["categories"]}, {"Food", "Travel"})

    def test_llm_disabled(self):
        with self.assertRaises(LlmRequiredError):
            asyncio.run(self._engine(enable_llm=False).suggest(self.db, "Airline", "ticket", []))

    def test_empty_catalog_is_not_found(self):
        self.db.query(Category).delete()
        self.db.commit()
        with self.assertRaises(NotFoundError):
            asyncio.run(self._engine().suggest(self.db, "Airline", "ticket", []))

    def test_reinforce_overwrites_category_and_confidence(self):
        engine = self._engine()
        first, created = engine.learn_vendor_rule(self.db, "Padaria São João", self.food.id, 0.7)
        second, created_again = engine.learn_vendor_rule(self.db, "padaria sao joao", self.travel.id, 0.5)
        self.db.commit()

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        rules = self.db.execute(select(VendorCategoryRule)).scalars().all()
        self.assertEqual(len(rules), 1)
        self.assertEqual(rules[0].category_id, self.travel.id)
        self.assertEqual(rules[0].confidence, 0.5)
        self.assertEqual(rules[0].keyword_normalized, "padaria sao joao")

        actions = [log.action for log in self.db.execute(select(AuditLog).order_by(AuditLog.timestamp)).scalars()]
        self.assertEqual(sorted(actions), ["VENDOR_RULE_CREATED", "VENDOR_RULE_REINFORCED"])

    def test_learn_validates_input(self):
        engine = self._engine()
        with self.assertRaises(ValidationFailedError):
            engine.learn_vendor_rule(self.db, "   ", self.food.id, 0.5)
        with self.assertRaises(ValidationFailedError):
            engine.learn_vendor_rule(self.db, "x" * 161, self.food.id, 0.5)
        with self.assertRaises(ValidationFailedError):
            engine.learn_vendor_rule(self.db, "uber", self.food.id, 1.2)
        with self.assertRaises(NotFoundError):
            engine.learn_vendor_rule(self.db, "uber", uuid.uuid4(), 0.5)
