import hashlib
import io
import re
import tempfile
import unittest
from pathlib import Path

from expense_ingest.core.errors import NotFoundError, StorageError, ValidationFailedError
from expense_ingest.core.storage import ContentAddressedStore, build_stored_name

STORED_NAME_RE = re.compile(r"^\d{14}_[0-9a-f]{32}\.[a-z0-9]+$")


class _BrokenStream(io.BytesIO):
    def read(self, size=-1):
        if self.tell() > 0:
            raise OSError("disk gone")
        return super().read(4)


class ContentAddressedStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = ContentAddressedStore(self.root / "imports")

    def tearDown(self):
        self._tmp.cleanup()

    def _source(self, name: str, data: bytes) -> Path:
        path = self.root / name
        path.write_bytes(data)
        return path

    def test_save_hashes_while_copying(self):
        data = b"%PDF-1.4 receipt" * 10000
        source = self._source("upload.tmp", data)

        stored = self.store.save_sync(source, "Receipt.PDF")

        self.assertRegex(stored.stored_name, STORED_NAME_RE)
        self.assertTrue(stored.stored_name.endswith(".pdf"))
        self.assertEqual(stored.extension, "pdf")
        self.assertEqual(stored.size_bytes, len(data))
        self.assertEqual(stored.content_hash.value, hashlib.sha256(data).hexdigest())
        self.assertEqual(self.store.read_bytes(stored.stored_name), data)

    def test_extension_falls_back_to_source_then_bin(self):
        source = self._source("scan.png", b"png bytes")
        self.assertEqual(self.store.save_sync(source, "no-extension").extension, "png")

        bare = self._source("blob", b"bytes")
        self.assertEqual(self.store.save_sync(bare, "no-extension").extension, "bin")

    def test_same_bytes_get_distinct_names(self):
        source = self._source("a.jpg", b"same")
        first = self.store.save_sync(source, "a.jpg")
        second = self.store.save_sync(source, "a.jpg")
        self.assertNotEqual(first.stored_name, second.stored_name)
        self.assertEqual(first.content_hash, second.content_hash)

    def test_missing_source_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.store.save_sync(self.root / "missing.pdf", "missing.pdf")

    def test_failed_copy_removes_partial_file(self):
        with self.assertRaises(StorageError):
            self.store.save_stream_sync(_BrokenStream(b"0123456789"), "broken.pdf")
        self.assertEqual(list((self.root / "imports").iterdir()), [])

    def test_open_read_missing_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.store.open_read("20240101000000_deadbeef.pdf")

    def test_blank_or_nested_name_is_rejected(self):
        with self.assertRaises(ValidationFailedError):
            self.store.open_read("  ")
        with self.assertRaises(ValidationFailedError):
            self.store.path_for("../secret.pdf")

    def test_delete_is_idempotent(self):
        stored = self.store.save_sync(self._source("x.pdf", b"x"), "x.pdf")
        self.store.delete(stored.stored_name)
        self.store.delete(stored.stored_name)
        self.assertFalse(self.store.path_for(stored.stored_name).exists())


class BuildStoredNameTests(unittest.TestCase):
    def test_lowercases_extension(self):
        self.assertTrue(build_stored_name("NOTA.JPEG").endswith(".jpeg"))

    def test_prefix_is_utc_timestamp(self):
        name = build_stored_name("a.pdf")
        self.assertRegex(name, STORED_NAME_RE)
