#!/usr/bin/env python3
"""
Smoke test for a running shortdrop server.
Exercises every public endpoint once and prints a summary.

Usage: SHORTDROP_URL=http://localhost:8000 UPLOAD_PASSWORD=... python smoke_api.py
"""

import os
import sys
from io import BytesIO
from urllib.parse import urlparse

import requests

BASE_URL = os.environ.get("SHORTDROP_URL", "http://localhost:8000").rstrip("/")
PASSWORD = os.environ.get("UPLOAD_PASSWORD", "")
AUTH_HEADERS = {"X-Auth": PASSWORD}
results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗" if self.status == "FAIL" else "!"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, status, message):
    result = CheckResult(endpoint, method, status, message)
    results.append(result)
    print(result)


def _path(url):
    return urlparse(url).path


def check_health():
    print("\n=== Health ===")
    try:
        response = requests.get(f"{BASE_URL}/health", timeout=5)
        if response.status_code == 200 and response.json().get("status") == "healthy":
            log_check("/health", "GET", "PASS", "Service healthy")
        else:
            log_check("/health", "GET", "FAIL", f"Status {response.status_code}: {response.text}")
    except requests.RequestException as e:
        log_check("/health", "GET", "FAIL", f"Exception: {e}")


def check_upload_rejects_missing_password():
    print("\n=== Upload without password ===")
    files = {"file": ("nope.txt", BytesIO(b"nope"), "text/plain")}
    try:
        response = requests.post(f"{BASE_URL}/api/upload", files=files, timeout=10)
        if response.status_code == 401:
            log_check("/api/upload", "POST", "PASS", "Unauthenticated upload rejected")
        else:
            log_check("/api/upload", "POST", "FAIL", f"Expected 401, got {response.status_code}")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {e}")


def check_upload():
    print("\n=== Upload ===")
    files = {"file": ("smoke report.pdf", BytesIO(b"%PDF-1.4 smoke"), "application/pdf")}
    try:
        response = requests.post(
            f"{BASE_URL}/api/upload", files=files, headers=AUTH_HEADERS, timeout=10
        )
        if response.status_code == 200:
            data = response.json()
            log_check("/api/upload", "POST", "PASS", f"Uploaded {data.get('key')}")
            return data
        log_check("/api/upload", "POST", "FAIL", f"Status {response.status_code}: {response.text}")
    except requests.RequestException as e:
        log_check("/api/upload", "POST", "FAIL", f"Exception: {e}")
    return None


def check_download(upload):
    print("\n=== Download ===")
    if not upload:
        log_check("/d/<key>", "GET", "SKIP", "No key from upload check")
        return
    try:
        response = requests.get(f"{BASE_URL}{_path(upload['fullUrl'])}", timeout=10)
        if response.status_code == 200 and response.content == b"%PDF-1.4 smoke":
            log_check("/d/<key>", "GET", "PASS", "Bytes match")
        else:
            log_check("/d/<key>", "GET", "FAIL", f"Status {response.status_code}")

        forced = requests.get(
            f"{BASE_URL}{_path(upload['fullUrl'])}", params={"download": "1"}, timeout=10
        )
        if forced.headers.get("Content-Disposition", "").startswith("attachment"):
            log_check("/d/<key>?download=1", "GET", "PASS", "Attachment disposition")
        else:
            log_check("/d/<key>?download=1", "GET", "FAIL", "Missing attachment disposition")
    except requests.RequestException as e:
        log_check("/d/<key>", "GET", "FAIL", f"Exception: {e}")


def check_short_link(slug):
    print("\n=== Short link ===")
    if not slug:
        log_check("/s/<slug>", "GET", "SKIP", "No slug available")
        return
    try:
        response = requests.get(f"{BASE_URL}/s/{slug}", allow_redirects=False, timeout=10)
        location = response.headers.get("Location", "")
        if response.status_code == 302 and "/d/" in location:
            log_check("/s/<slug>", "GET", "PASS", f"Redirects to {location}")
        else:
            log_check("/s/<slug>", "GET", "FAIL", f"Status {response.status_code}")
    except requests.RequestException as e:
        log_check("/s/<slug>", "GET", "FAIL", f"Exception: {e}")


def check_share(upload):
    print("\n=== Share ===")
    if not upload:
        log_check("/api/share", "POST", "SKIP", "No key from upload check")
        return None
    try:
        response = requests.post(
            f"{BASE_URL}/api/share",
            json={"key": upload["key"], "ttl": 600},
            headers=AUTH_HEADERS,
            timeout=10,
        )
        if response.status_code == 200:
            data = response.json()
            log_check("/api/share", "POST", "PASS", f"Slug {data.get('slug')} for {data.get('expiresIn')}s")
            return data.get("slug")
        log_check("/api/share", "POST", "FAIL", f"Status {response.status_code}: {response.text}")
    except requests.RequestException as e:
        log_check("/api/share", "POST", "FAIL", f"Exception: {e}")
    return None


def check_listings():
    print("\n=== Listings ===")
    for path in ("/api/list", "/api/admin/files", "/api/admin/kv"):
        try:
            response = requests.get(f"{BASE_URL}{path}", headers=AUTH_HEADERS, timeout=10)
            if response.status_code == 200 and "items" in response.json():
                log_check(path, "GET", "PASS", f"{len(response.json()['items'])} items")
            else:
                log_check(path, "GET", "FAIL", f"Status {response.status_code}")
        except requests.RequestException as e:
            log_check(path, "GET", "FAIL", f"Exception: {e}")


def check_delete(upload):
    print("\n=== Delete ===")
    if not upload:
        log_check("/api/delete", "POST", "SKIP", "No key from upload check")
        return
    try:
        response = requests.post(
            f"{BASE_URL}/api/delete", json={"key": upload["key"]}, headers=AUTH_HEADERS, timeout=10
        )
        if response.status_code != 200:
            log_check("/api/delete", "POST", "FAIL", f"Status {response.status_code}")
            return
        gone = requests.get(f"{BASE_URL}{_path(upload['fullUrl'])}", timeout=10)
        if gone.status_code == 404:
            log_check("/api/delete", "POST", "PASS", "Object no longer downloadable")
        else:
            log_check("/api/delete", "POST", "FAIL", f"Download after delete returned {gone.status_code}")
    except requests.RequestException as e:
        log_check("/api/delete", "POST", "FAIL", f"Exception: {e}")


def print_summary():
    print("\n" + "=" * 80)
    print("SUMMARY")
    print("=" * 80)

    passed = sum(1 for r in results if r.status == "PASS")
    failed = sum(1 for r in results if r.status == "FAIL")
    skipped = sum(1 for r in results if r.status == "SKIP")

    print(f"\nTotal checks: {len(results)}")
    print(f"Passed: {passed}")
    print(f"Failed: {failed}")
    print(f"Skipped: {skipped}")

    errors = [r for r in results if r.status == "FAIL"]
    if errors:
        print("\nFAILED CHECKS:")
        for r in errors:
            print(f"  - {r.method} {r.endpoint}: {r.message}")


def main():
    print(f"Base URL: {BASE_URL}")
    if not PASSWORD:
        print("UPLOAD_PASSWORD is not set; authenticated checks will fail.")

    check_health()
    check_upload_rejects_missing_password()
    upload = check_upload()
    check_download(upload)
    check_short_link(upload.get("slug") if upload else None)
    shared_slug = check_share(upload)
    check_short_link(shared_slug)
    check_listings()
    check_delete(upload)

    print_summary()
    return 1 if any(r.status == "FAIL" for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
