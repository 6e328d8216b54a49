import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_ingest.core.errors import ConflictError
from expense_ingest.models.documents import AuditLog, Base, ImportedDocument
from expense_ingest.schemas.imports import ImportedDocumentStatus
from expense_ingest.services.ai.common.local_runtime import LocalLlmRuntime
from expense_ingest.services.document_transitions import (
    ALLOWED_TRANSITIONS,
    apply_transition,
    mark_confirmed,
    mark_failed,
    mark_parsed,
)
from expense_ingest.services.setup_status import get_setup_status


class DocumentTransitionTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.db = sessionmaker(bind=self.engine)()
        self.doc = ImportedDocument(
            original_file_name="a.pdf",
            stored_file_name="20240101000000_abc.pdf",
            file_extension="pdf",
            size_bytes=1,
            content_hash="a" * 64,
        )
        self.db.add(self.doc)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def test_confirmed_is_terminal(self):
        self.assertEqual(ALLOWED_TRANSITIONS[ImportedDocumentStatus.CONFIRMED], [])

    def test_uploaded_cannot_jump_to_confirmed(self):
        with self.assertRaises(ConflictError):
            apply_transition(self.db, document=self.doc, new_status=ImportedDocumentStatus.CONFIRMED)

    def test_failure_reason_defaults_and_truncates(self):
        mark_failed(self.db, self.doc, "   ")
        self.assertEqual(self.doc.failure_reason, "Unknown")

        mark_failed(self.db, self.doc, "x" * 500, error_kind="OcrFailed")
        self.assertEqual(len(self.doc.failure_reason), 400)
        self.assertEqual(self.doc.status, "FAILED")

    def test_confirm_twice_is_a_no_op(self):
        mark_parsed(self.db, self.doc, is_ocr_used=True)
        self.assertTrue(mark_confirmed(self.db, self.doc, created_count=2))
        self.assertFalse(mark_confirmed(self.db, self.doc, created_count=2))
        self.db.commit()

        actions = [log.action for log in self.db.execute(select(AuditLog)).scalars()]
        self.assertEqual(actions.count("DOCUMENT_CONFIRMED"), 1)
        self.assertEqual(actions.count("DOCUMENT_PARSED"), 1)

    def test_cannot_leave_confirmed(self):
        mark_parsed(self.db, self.doc, is_ocr_used=False)
        mark_confirmed(self.db, self.doc)
        with self.assertRaises(ConflictError):
            mark_parsed(self.db, self.doc, is_ocr_used=True)
        with self.assertRaises(ConflictError):
            mark_failed(self.db, self.doc, "boom")


class _Extractor:
    def __init__(self, installed):
        self.installed = installed

    def language_code(self):
        return "eng"

    def has_ocr_data(self, language=None):
        return self.installed


class SetupStatusTests(unittest.TestCase):
    def test_local_provider_requires_model(self):
        with tempfile.TemporaryDirectory() as tmp:
            model = Path(tmp) / "qwen.gguf"
            runtime = LocalLlmRuntime(model)
            with patch.dict(os.environ, {"LLM_PROVIDER": "local"}):
                status = get_setup_status(_Extractor(True), runtime)
                self.assertFalse(status.ready)
                llm = status.items[1]
                self.assertTrue(llm.is_required)
                self.assertEqual(llm.detail, "DownloadRequired")
                self.assertEqual(llm.name, "qwen.gguf")

                model.write_bytes(b"gguf")
                self.assertTrue(get_setup_status(_Extractor(True), runtime).ready)

    def test_remote_provider_only_needs_ocr_data(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": "openai"}):
            status = get_setup_status(_Extractor(True))
        self.assertTrue(status.ready)
        self.assertFalse(status.items[1].is_required)
