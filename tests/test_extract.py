"""Tests for reference extraction from markup and style sheets."""

from __future__ import annotations

from page_mirror import (
    bs4_parse,
    extract_from_document,
    extract_from_stylesheet,
    filter_same_origin,
    is_same_origin,
    origin_of,
    parse_srcset,
    resolve_url,
)

BASE = "https://example.test/blog/post.html"

_PAGE = """\
<html><head>
  <link rel="stylesheet" href="/css/site.css">
  <link rel="shortcut icon" href="favicon.ico">
  <link rel="canonical" href="/canonical">
  <script src="app.js"></script>
  <script>var inline = 1;</script>
</head><body>
  <img src="../img/a.png" srcset="a.png 1x, /img/b.png 2x">
  <picture><source srcset="/img/c.webp 480w"><source src="/v/clip.mp4"></picture>
  <video src="/v/movie.mp4" poster="/v/poster.jpg"></video>
  <audio src="https://cdn.other.test/sound.mp3"></audio>
  <img src="">
  <img src="http://[::1">
  <a href="/not-an-asset.html">link</a>
</body></html>
"""


class TestResolveUrl:
    def test_relative(self) -> None:
        assert resolve_url("../x.png", BASE) == "https://example.test/x.png"

    def test_empty_and_blank(self) -> None:
        assert resolve_url("", BASE) is None
        assert resolve_url("   ", BASE) is None
        assert resolve_url(None, BASE) is None

    def test_malformed_is_dropped(self) -> None:
        assert resolve_url("http://[::1", BASE) is None
        assert resolve_url("http://example.test:notaport/", BASE) is None


class TestExtractFromDocument:
    def test_collects_all_asset_kinds(self) -> None:
        urls = extract_from_document(bs4_parse(_PAGE), BASE)
        assert urls == {
            "https://example.test/css/site.css",
            "https://example.test/blog/favicon.ico",
            "https://example.test/blog/app.js",
            "https://example.test/img/a.png",
            "https://example.test/blog/a.png",
            "https://example.test/img/b.png",
            "https://example.test/img/c.webp",
            "https://example.test/v/clip.mp4",
            "https://example.test/v/movie.mp4",
            "https://example.test/v/poster.jpg",
            "https://cdn.other.test/sound.mp3",
        }

    def test_anchors_and_canonical_ignored(self) -> None:
        urls = extract_from_document(bs4_parse(_PAGE), BASE)
        assert "https://example.test/not-an-asset.html" not in urls
        assert "https://example.test/canonical" not in urls


class TestSrcset:
    def test_descriptors_preserved(self) -> None:
        assert parse_srcset("a.png 1x,  b.png   2x , c.png") == [
            ("a.png", "1x"),
            ("b.png", "2x"),
            ("c.png", ""),
        ]

    def test_empty(self) -> None:
        assert parse_srcset("") == []


class TestExtractFromStylesheet:
    def test_url_and_import_forms(self) -> None:
        css = """
        @import "one.css";
        @import url('two.css') screen;
        @import url(/root.css);
        .a { background: url(three.png); }
        .b { background: url( "four.png" ); }
        @font-face { src: url('../fonts/f.woff2') format('woff2'); }
        """
        urls = extract_from_stylesheet(css, "https://example.test/css/main.css")
        assert urls == {
            "https://example.test/css/one.css",
            "https://example.test/css/two.css",
            "https://example.test/root.css",
            "https://example.test/css/three.png",
            "https://example.test/css/four.png",
            "https://example.test/fonts/f.woff2",
        }

    def test_no_references(self) -> None:
        assert extract_from_stylesheet("body{color:red}", BASE) == set()

    def test_data_uri_is_off_origin(self) -> None:
        css = ".i{background:url(data:image/gif;base64,R0lGOD)}"
        urls = extract_from_stylesheet(css, BASE)
        assert filter_same_origin(urls, origin_of(BASE)) == set()


class TestSameOrigin:
    def test_default_port_matches(self) -> None:
        origin = origin_of("https://example.test/")
        assert is_same_origin("https://example.test:443/x.css", origin)

    def test_scheme_host_port_differences(self) -> None:
        origin = origin_of("https://example.test/")
        assert not is_same_origin("http://example.test/x.css", origin)
        assert not is_same_origin("https://example.test:8443/x.css", origin)
        assert not is_same_origin("https://cdn.example.test/x.css", origin)

    def test_filter(self) -> None:
        origin = origin_of("https://example.test/")
        urls = {"https://example.test/a.js", "https://other.test/b.js", "mailto:x@y.z"}
        assert filter_same_origin(urls, origin) == {"https://example.test/a.js"}
