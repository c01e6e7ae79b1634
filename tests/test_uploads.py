import io
import tempfile
import unittest
from pathlib import Path
from typing import Optional
from unittest import mock

from shortdrop.aliases import AliasEntry, SqliteAliasIndex
from shortdrop.errors import (
    MimeBlockedError,
    MimeNotAllowedError,
    SizeExceededError,
    StoreWriteFailedError,
    UnauthenticatedError,
)
from shortdrop.slugs import SlugAllocator
from shortdrop.storage import LocalObjectStore
from shortdrop.uploads import UploadPipeline, UploadPolicy, materialize

MB = 1024 * 1024


class FailingAliasIndex(SqliteAliasIndex):
    def put_if_absent(
        self, slug: str, target_key: str, ttl: Optional[int] = None
    ) -> Optional[AliasEntry]:
        raise RuntimeError("link index offline")


class UploadPolicyTests(unittest.TestCase):
    def test_declared_size_precheck(self):
        policy = UploadPolicy(max_size_bytes=10 * MB)
        policy.check_declared_size(None)
        policy.check_declared_size(10 * MB)
        with self.assertRaises(SizeExceededError) as ctx:
            policy.check_declared_size(10 * MB + 1)
        self.assertEqual(ctx.exception.status_code, 413)
        self.assertEqual(ctx.exception.reason, "declared_length")

    def test_blocked_list_wins_over_allowed_list(self):
        policy = UploadPolicy(
            max_size_bytes=MB,
            blocked_mime_patterns=("application/x-msdownload",),
            allowed_mime_patterns=("application/",),
        )
        with self.assertRaises(MimeBlockedError):
            policy.check_mime("application/x-msdownload")
        policy.check_mime("application/pdf")

    def test_allowed_list_restricts_types(self):
        policy = UploadPolicy(max_size_bytes=MB, allowed_mime_patterns=("image/",))
        policy.check_mime("image/png")
        with self.assertRaises(MimeNotAllowedError) as ctx:
            policy.check_mime("text/plain")
        self.assertEqual(ctx.exception.status_code, 415)

    def test_blocked_then_allowed_lists_combined(self):
        policy = UploadPolicy(
            max_size_bytes=MB,
            blocked_mime_patterns=("exe",),
            allowed_mime_patterns=("image/", "text/"),
        )
        with self.assertRaises(MimeBlockedError):
            policy.check_mime("application/x-exe")
        policy.check_mime("image/png")
        with self.assertRaises(MimeNotAllowedError):
            policy.check_mime("application/pdf")

    def test_patterns_match_substrings(self):
        policy = UploadPolicy(max_size_bytes=MB, blocked_mime_patterns=("script",))
        with self.assertRaises(MimeBlockedError):
            policy.check_mime("application/javascript")

    def test_from_config(self):
        policy = UploadPolicy.from_config(
            {"max_size_bytes": 5, "blocked_mime": ["a"], "allowed_mime": []}
        )
        self.assertEqual(policy, UploadPolicy(5, ("a",), ()))


class MaterializeTests(unittest.TestCase):
    def test_bytes_pass_through(self):
        self.assertEqual(materialize(b"abc", 10), b"abc")

    def test_stream_reads_at_most_one_byte_past_limit(self):
        stream = io.BytesIO(b"x" * 100)
        self.assertEqual(len(materialize(stream, 10)), 11)


class UploadPipelineTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.store = LocalObjectStore(root / "objects", root / "data" / "objects.db")
        self.index = SqliteAliasIndex(root / "data" / "links.db")
        self.allocator = SlugAllocator(self.index, max_attempts=5)
        self.policy = UploadPolicy(max_size_bytes=10 * MB)
        self.pipeline = UploadPipeline(
            self.store,
            self.policy,
            allocator=self.allocator,
            base_url="https://files.example.com",
        )

    def tearDown(self):
        self.tmp.cleanup()

    def test_upload_stores_object_and_binds_short_link(self):
        result = self.pipeline.upload(
            b"%PDF-1.4 data", "report.pdf", "application/pdf", authenticated=True
        )

        self.assertRegex(result.key, r"^\d{4}-\d{2}-\d{2}/[0-9a-f-]{36}/report\.pdf$")
        self.assertEqual(result.full_url, f"https://files.example.com/d/{result.key}")
        self.assertEqual(result.short_url, f"https://files.example.com/s/{result.slug}")
        self.assertEqual(result.url, result.short_url)
        self.assertEqual(self.index.get(result.slug), result.key)

        info = self.store.head(result.key)
        self.assertEqual(info.content_type, "application/pdf")
        self.assertEqual(info.original_filename, "report.pdf")
        self.assertEqual(info.slug, result.slug)

        payload = result.to_dict()
        self.assertEqual(payload["contentType"], "application/pdf")
        self.assertEqual(payload["fullUrl"], result.full_url)
        self.assertEqual(payload["shortUrl"], result.short_url)
        self.assertEqual(payload["size"], len(b"%PDF-1.4 data"))

    def test_unauthenticated_upload_is_rejected_before_store(self):
        with mock.patch.object(self.store, "put") as put:
            with self.assertRaises(UnauthenticatedError):
                self.pipeline.upload(b"data", "a.txt", "text/plain", authenticated=False)
        put.assert_not_called()

    def test_oversize_declared_length_rejected_without_reading(self):
        stream = mock.Mock()
        with self.assertRaises(SizeExceededError):
            self.pipeline.upload(
                stream, "big.bin", "application/octet-stream", 10 * MB + 1, authenticated=True
            )
        stream.read.assert_not_called()

    def test_actual_size_is_rechecked(self):
        pipeline = UploadPipeline(self.store, UploadPolicy(max_size_bytes=4))
        with self.assertRaises(SizeExceededError) as ctx:
            pipeline.upload(io.BytesIO(b"12345"), "a.bin", None, authenticated=True)
        self.assertEqual(ctx.exception.reason, "payload_length")
        self.assertEqual(self.store.list(10).objects, [])

    def test_blocked_mime_never_reaches_store(self):
        pipeline = UploadPipeline(
            self.store, UploadPolicy(max_size_bytes=MB, blocked_mime_patterns=("text/html",))
        )
        with self.assertRaises(MimeBlockedError):
            pipeline.upload(b"<html>", "page.html", "text/html", authenticated=True)
        self.assertEqual(self.store.list(10).objects, [])

    def test_missing_content_type_defaults_to_octet_stream(self):
        result = self.pipeline.upload(b"\x00\x01", "blob", "", authenticated=True)
        self.assertEqual(result.content_type, "application/octet-stream")
        self.assertEqual(self.store.head(result.key).content_type, "application/octet-stream")

    def test_store_failure_maps_to_store_write_failed(self):
        with mock.patch.object(self.store, "put", side_effect=OSError("disk full")):
            with self.assertRaises(StoreWriteFailedError) as ctx:
                self.pipeline.upload(b"data", "a.txt", "text/plain", authenticated=True)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.details, "disk full")

    def test_alias_failure_is_not_fatal(self):
        failing = FailingAliasIndex(Path(self.tmp.name) / "data" / "other-links.db")
        pipeline = UploadPipeline(
            self.store, self.policy, allocator=SlugAllocator(failing, max_attempts=5)
        )

        with self.assertLogs("shortdrop.lifecycle", level="WARNING") as logs:
            result = pipeline.upload(b"data", "a.txt", "text/plain", authenticated=True)

        self.assertIsNone(result.slug)
        self.assertIsNone(result.short_url)
        self.assertEqual(result.url, result.full_url)
        self.assertNotIn("shortUrl", result.to_dict())
        self.assertIsNotNone(self.store.head(result.key))
        self.assertTrue(any("short_link_failed" in line for line in logs.output))

    def test_exhausted_reservation_is_not_fatal(self):
        with mock.patch.object(self.index, "get", return_value="taken"):
            result = self.pipeline.upload(b"data", "a.txt", "text/plain", authenticated=True)
        self.assertIsNone(result.slug)
        self.assertIsNone(self.store.head(result.key).slug)

    def test_upload_without_link_index(self):
        pipeline = UploadPipeline(self.store, self.policy)
        result = pipeline.upload(b"data", "notes.txt", "text/plain", authenticated=True)
        self.assertIsNone(result.short_url)
        self.assertEqual(result.url, f"/d/{result.key}")

    def test_filename_is_sanitized_in_key_but_kept_in_metadata(self):
        result = self.pipeline.upload(
            b"data", "my report (1).pdf", "application/pdf", authenticated=True
        )
        self.assertTrue(result.key.endswith("/my_report_1_.pdf"))
        self.assertEqual(result.filename, "my report (1).pdf")
        self.assertEqual(self.store.head(result.key).original_filename, "my report (1).pdf")


if __name__ == "__main__":
    unittest.main()
