import math
import unittest

from expense_ingest.core.errors import ErrorKind, ValidationFailedError
from expense_ingest.schemas.values import ConfidenceScore, DocumentHash
from expense_ingest.services.keywords import normalize_keyword

HEX = "ab" * 32


class DocumentHashTests(unittest.TestCase):
    def test_trims_and_lowercases(self):
        value = DocumentHash.create(f"  {HEX.upper()}  ")
        self.assertEqual(value.value, HEX)
        self.assertEqual(str(value), HEX)

    def test_rejects_wrong_length(self):
        with self.assertRaises(ValidationFailedError) as ctx:
            DocumentHash.create("abc")
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)

    def test_rejects_non_hex(self):
        with self.assertRaises(ValidationFailedError):
            DocumentHash.create("g" * 64)

    def test_rejects_blank(self):
        with self.assertRaises(ValidationFailedError):
            DocumentHash.create("   ")
        with self.assertRaises(ValidationFailedError):
            DocumentHash.create(None)

    def test_from_storage_round_trips(self):
        self.assertEqual(DocumentHash.from_storage(HEX), DocumentHash.create(HEX))


class ConfidenceScoreTests(unittest.TestCase):
    def test_bounds_are_inclusive(self):
        self.assertEqual(ConfidenceScore.create(0).value, 0.0)
        self.assertEqual(ConfidenceScore.create(1).value, 1.0)
        self.assertEqual(float(ConfidenceScore.create(0.25)), 0.25)

    def test_rejects_out_of_range(self):
        for raw in (-0.01, 1.01, 5):
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationFailedError):
                    ConfidenceScore.create(raw)

    def test_rejects_non_finite(self):
        for raw in (math.nan, math.inf, -math.inf):
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationFailedError):
                    ConfidenceScore.create(raw)

    def test_rejects_missing(self):
        with self.assertRaises(ValidationFailedError):
            ConfidenceScore.create(None)


class NormalizeKeywordTests(unittest.TestCase):
    def test_strips_diacritics_and_case(self):
        self.assertEqual(normalize_keyword("  Padaria São JOÃO "), "padaria sao joao")

    def test_collapses_whitespace(self):
        self.assertEqual(normalize_keyword("Posto\t  Shell\nCentro"), "posto shell centro")

    def test_blank_is_empty(self):
        self.assertEqual(normalize_keyword(""), "")
        self.assertEqual(normalize_keyword("   "), "")
        self.assertEqual(normalize_keyword(None), "")
