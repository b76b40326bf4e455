"""Shared fixtures: an in-memory stand-in for ``requests.Session``.

Routes map absolute URLs to ``(status, content_type, body)`` tuples or to an
exception instance that ``get`` raises.  Unknown URLs answer 404.  Every call
is counted per URL so tests can assert at-most-one-fetch behaviour.
"""

from __future__ import annotations

from collections import Counter
from threading import Lock

import pytest

import page_mirror


class FakeResponse:
    def __init__(self, status_code: int, content_type: str, body) -> None:
        self.status_code = status_code
        self.headers = {"Content-Type": content_type} if content_type else {}
        self.content = body.encode("utf-8") if isinstance(body, str) else body


class FakeSession:
    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.calls: Counter = Counter()
        self.headers: dict = {}
        self._lock = Lock()

    def get(self, url: str, timeout=None) -> FakeResponse:
        with self._lock:
            self.calls[url] += 1
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, "text/plain", "Not Found")
        if isinstance(route, Exception):
            raise route
        status, content_type, body = route
        return FakeResponse(status, content_type, body)


SEED_HTML = """\
<!DOCTYPE html>
<html>
<head>
  <title>Example</title>
  <link rel="stylesheet" href="/s.css">
  <script src="https://cdn.other.test/lib.js" crossorigin="anonymous"></script>
</head>
<body>
  <img src="/i.png" alt="logo">
</body>
</html>
"""

SITE_ROUTES = {
    "https://example.test/": (200, "text/html; charset=utf-8", SEED_HTML),
    "https://example.test/s.css": (
        200,
        "text/css",
        '@import url("/extra.css");\nbody { background: url(/i.png); }\n',
    ),
    "https://example.test/extra.css": (
        200,
        "text/css; charset=utf-8",
        ".x{background:url(/sprite.png)}",
    ),
    "https://example.test/i.png": (200, "image/png", b"\x89PNG-i"),
    "https://example.test/sprite.png": (200, "image/png", b"\x89PNG-sprite"),
}


@pytest.fixture
def site_routes() -> dict:
    return dict(SITE_ROUTES)


@pytest.fixture
def fake_session(site_routes) -> FakeSession:
    return FakeSession(site_routes)


@pytest.fixture
def settings(tmp_path) -> page_mirror.Settings:
    return page_mirror.Settings(output_root=str(tmp_path), workers=4)


@pytest.fixture
def make_session():
    return FakeSession
