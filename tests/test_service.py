import tempfile
import unittest
from pathlib import Path
from unittest import mock

from shortdrop.config import load_config
from shortdrop.errors import (
    AllocationExhaustedError,
    BadRequestError,
    NotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    UpstreamFailureError,
)
from shortdrop.service import ShareService


class ShareServiceTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = load_config(
            {
                "SHORTDROP_STORAGE_ROOT": self.tmp.name,
                "UPLOAD_PASSWORD": "secret",
                "BASE_URL": "https://files.example.com/",
            }
        )
        self.service = ShareService.from_config(self.config)

    def tearDown(self):
        self.tmp.cleanup()

    def _upload(self, name="report.pdf", data=b"%PDF-1.4"):
        return self.service.upload(data, name, "application/pdf", authenticated=True)

    def test_wiring_from_config(self):
        self.assertEqual(self.service.base_url, "https://files.example.com")
        self.assertEqual(self.service.share_allocator.max_attempts, 10)
        self.assertEqual(self.service.uploads.allocator.max_attempts, 5)
        self.assertTrue(Path(self.tmp.name, "data", "links.db").exists())

    def test_links_can_be_disabled(self):
        config = load_config(
            {"SHORTDROP_STORAGE_ROOT": self.tmp.name, "SHORTDROP_LINKS_ENABLED": "false"}
        )
        service = ShareService.from_config(config)
        self.assertIsNone(service.alias_index)

        result = service.upload(b"x", "a.txt", "text/plain", authenticated=True)
        self.assertIsNone(result.short_url)
        with self.assertRaises(StoreUnavailableError):
            service.share(result.key, authenticated=True)
        with self.assertRaises(StoreUnavailableError):
            service.resolve("abcdEF12")

    def test_delete_then_fetch_is_not_found(self):
        result = self._upload()
        self.assertEqual(self.service.delete(result.key, authenticated=True), {"ok": True})
        with self.assertRaises(NotFoundError):
            self.service.fetch(result.key)

    def test_delete_is_idempotent(self):
        self.assertEqual(self.service.delete("2024-01-01/x/none.txt", authenticated=True), {"ok": True})

    def test_delete_requires_key_and_auth(self):
        with self.assertRaises(BadRequestError):
            self.service.delete("", authenticated=True)
        with self.assertRaises(BadRequestError):
            self.service.delete(None, authenticated=True)
        with self.assertRaises(UnauthenticatedError):
            self.service.delete("k", authenticated=False)

    def test_delete_leaves_alias_dangling(self):
        result = self._upload()
        self.service.delete(result.key, authenticated=True)
        target = self.service.resolve(result.slug)
        self.assertTrue(target.endswith(result.key))

    def test_share_mints_ttl_link(self):
        result = self._upload()

        shared = self.service.share(result.key, 120, authenticated=True)

        self.assertEqual(shared["key"], result.key)
        self.assertEqual(shared["expiresIn"], 120)
        self.assertEqual(shared["url"], f"https://files.example.com/s/{shared['slug']}")
        self.assertNotEqual(shared["slug"], result.slug)
        entry = self.service.alias_index.lookup(shared["slug"])
        self.assertIsNotNone(entry.expires_at)

    def test_share_ttl_defaults(self):
        result = self._upload()
        for ttl in (None, 0, ""):
            with self.subTest(ttl=ttl):
                shared = self.service.share(result.key, ttl, authenticated=True)
                self.assertEqual(shared["expiresIn"], 86400)

    def test_share_rejects_invalid_ttl(self):
        result = self._upload()
        for ttl in (-1, "soon", True):
            with self.subTest(ttl=ttl):
                with self.assertRaises(BadRequestError):
                    self.service.share(result.key, ttl, authenticated=True)

    def test_share_unknown_key(self):
        with self.assertRaises(NotFoundError):
            self.service.share("2024-01-01/x/none.txt", authenticated=True)

    def test_share_exhaustion(self):
        result = self._upload()
        with mock.patch.object(self.service.alias_index, "put_if_absent", return_value=None):
            with self.assertRaises(AllocationExhaustedError):
                self.service.share(result.key, authenticated=True)

    def test_share_wraps_store_failures(self):
        with mock.patch.object(self.service.store, "head", side_effect=RuntimeError("boom")):
            with self.assertRaises(UpstreamFailureError) as ctx:
                self.service.share("k", authenticated=True)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.details, "boom")

    def test_share_wraps_link_index_failures(self):
        result = self._upload()
        with mock.patch.object(
            self.service.alias_index, "put_if_absent", side_effect=RuntimeError("locked")
        ):
            with self.assertRaises(UpstreamFailureError):
                self.service.share(result.key, authenticated=True)

    def test_share_requires_auth(self):
        with self.assertRaises(UnauthenticatedError):
            self.service.share("k", authenticated=False)

    def test_alias_admin(self):
        result = self._upload()
        listing = self.service.list_aliases(authenticated=True)
        self.assertEqual(listing["items"], [])
        self.assertEqual(listing["total"], 0)
        self.assertIn("message", listing)

        self.assertEqual(
            self.service.delete_alias(result.slug, authenticated=True),
            {"ok": True, "slug": result.slug},
        )
        with self.assertRaises(NotFoundError):
            self.service.resolve(result.slug)
        with self.assertRaises(BadRequestError):
            self.service.delete_alias("", authenticated=True)

    def test_delete_alias_wraps_index_failures(self):
        with mock.patch.object(
            self.service.alias_index, "delete", side_effect=RuntimeError("locked")
        ):
            with self.assertRaises(UpstreamFailureError) as ctx:
                self.service.delete_alias("abcd1234", authenticated=True)
        self.assertEqual(ctx.exception.message, "Failed to delete short link")

    def test_catalog_requires_auth(self):
        with self.assertRaises(UnauthenticatedError):
            self.service.list_catalog(authenticated=False)
        with self.assertRaises(UnauthenticatedError):
            self.service.list_recent(authenticated=False)

    def test_catalog_and_recent(self):
        result = self._upload()
        page = self.service.list_catalog(authenticated=True)
        self.assertEqual([item.key for item in page.items], [result.key])
        self.assertEqual(page.items[0].slug, result.slug)

        recent = self.service.list_recent("10", authenticated=True)
        self.assertEqual(recent["items"][0]["key"], result.key)

    def test_purge_and_temp_cleanup(self):
        self.service.alias_index.put("expired1", "k", ttl=0)
        self.assertEqual(self.service.purge_expired_links(), 1)
        self.assertEqual(self.service.cleanup_temp_files(), 0)

    def test_health(self):
        health = self.service.health()
        self.assertEqual(health["status"], "healthy")
        self.assertEqual(health["checks"]["store"]["backend"], "local")
        self.assertEqual(health["checks"]["links"]["status"], "ok")

    def test_health_reports_failures(self):
        with mock.patch.object(self.service.store, "health_check", side_effect=OSError("disk")):
            health = self.service.health()
        self.assertEqual(health["status"], "unhealthy")
        self.assertIn("disk", health["checks"]["store"]["status"])


if __name__ == "__main__":
    unittest.main()
