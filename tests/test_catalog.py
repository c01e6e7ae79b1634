import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from shortdrop.catalog import HARD_LIMIT, CatalogEnumerator, clamp_limit
from shortdrop.storage import LocalObjectStore


class ClampLimitTests(unittest.TestCase):
    def test_clamps_to_range(self):
        self.assertEqual(clamp_limit(0, 100), 1)
        self.assertEqual(clamp_limit(-5, 100), 1)
        self.assertEqual(clamp_limit(5000, 100), HARD_LIMIT)
        self.assertEqual(clamp_limit("25", 100), 25)

    def test_invalid_values_use_default(self):
        self.assertEqual(clamp_limit(None, 100), 100)
        self.assertEqual(clamp_limit("lots", 1000), 1000)


class CatalogEnumeratorTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.store = LocalObjectStore(root / "objects", root / "objects.db")
        self.catalog = CatalogEnumerator(self.store, base_url="https://x.example", max_workers=4)

    def tearDown(self):
        self.tmp.cleanup()

    def _put(self, key, slug=None, content_type="text/plain"):
        metadata = {"original-filename": key.rsplit("/", 1)[-1].upper()}
        if slug:
            metadata["slug"] = slug
        return self.store.put(key, b"data", content_type, metadata)

    def test_items_are_enriched_with_head_metadata(self):
        self._put("2024-01-01/a/one.txt", slug="abcdEF12")
        self._put("2024-01-01/b/two.txt")

        page = self.catalog.list()

        self.assertFalse(page.truncated)
        first, second = page.items
        self.assertEqual(first.slug, "abcdEF12")
        self.assertEqual(first.short_url, "https://x.example/s/abcdEF12")
        self.assertEqual(first.original_filename, "ONE.TXT")
        self.assertEqual(first.url, "https://x.example/d/2024-01-01/a/one.txt")
        self.assertIsNone(second.slug)
        self.assertIsNone(second.short_url)

        payload = page.to_dict()
        self.assertEqual(payload["total"], 2)
        self.assertEqual(payload["items"][0]["filename"], "one.txt")
        self.assertEqual(payload["items"][0]["originalFilename"], "ONE.TXT")
        self.assertTrue(payload["items"][0]["uploaded"].endswith("Z"))

    def test_head_failure_only_degrades_its_item(self):
        self._put("2024-01-01/a/one.txt", slug="abcdEF12")
        self._put("2024-01-01/b/two.txt", slug="zyxwVU98")
        real_head = self.store.head

        def flaky_head(key):
            if key.endswith("one.txt"):
                raise RuntimeError("timeout")
            return real_head(key)

        with mock.patch.object(self.store, "head", side_effect=flaky_head):
            page = self.catalog.list()

        failed, healthy = page.items
        self.assertIsNone(failed.slug)
        self.assertEqual(failed.content_type, "text/plain")
        self.assertEqual(healthy.slug, "zyxwVU98")

    def test_pagination_with_cursor(self):
        for number in range(5):
            self._put(f"2024-01-01/{number}/file.txt")

        first = self.catalog.list(limit=3)
        self.assertEqual(len(first.items), 3)
        self.assertTrue(first.truncated)

        second = self.catalog.list(cursor=first.cursor, limit=3)
        self.assertEqual(len(second.items), 2)
        self.assertFalse(second.truncated)

    def test_limit_is_clamped(self):
        with mock.patch.object(self.store, "list", wraps=self.store.list) as listing:
            self.catalog.list(limit=99999)
            self.catalog.list(limit=0)
        self.assertEqual(listing.call_args_list[0].args[0], HARD_LIMIT)
        self.assertEqual(listing.call_args_list[1].args[0], 1)

    def test_empty_store(self):
        page = self.catalog.list()
        self.assertEqual(page.items, [])
        self.assertEqual(page.to_dict()["total"], 0)

    def test_recent_is_newest_first(self):
        self._put("2024-01-01/a/old.txt")
        time.sleep(0.01)
        self._put("2024-01-01/b/new.txt")

        rows = self.catalog.recent()

        self.assertEqual([row["key"] for row in rows], ["2024-01-01/b/new.txt", "2024-01-01/a/old.txt"])
        self.assertEqual(rows[0]["contentType"], "text/plain")
        self.assertIn("lastModified", rows[0])


if __name__ == "__main__":
    unittest.main()
