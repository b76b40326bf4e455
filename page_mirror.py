#!/usr/bin/env python3
import argparse
import logging
import os
import posixpath
import re
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

USER_AGENT = "PageMirror/1.0 (+local)"

DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
}

# url(...) with optional quotes, or a bare-string @import "...".
# @import url(...) is covered by the first branch.
CSS_REF_RE = re.compile(
    r"url\(\s*([\"']?)([^\"')]+)\1\s*\)|@import\s+([\"'])([^\"']+)\3",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".avif", ".ico", ".bmp"}
FONT_EXTS = {".woff", ".woff2", ".ttf", ".otf", ".eot"}

DEFAULT_PORTS = {"http": 80, "https": 443}

# (selector, attribute) pairs shared by extraction and rewriting
ASSET_ATTRS: List[Tuple[str, str]] = [
    ("link[rel=stylesheet]", "href"),
    ("link[rel~=icon]", "href"),
    ("script[src]", "src"),
    ("img[src]", "src"),
    ("source[src]", "src"),
    ("video[src]", "src"),
    ("audio[src]", "src"),
    ("video[poster]", "poster"),
    ("img[srcset]", "srcset"),
    ("source[srcset]", "srcset"),
]
SRCSET_ATTRS = {"srcset"}
STRIP_ON_REWRITE = ("integrity", "crossorigin", "referrerpolicy")

MAX_PROMPT_ATTEMPTS = 3

# -------------------- Settings --------------------


@dataclass
class Settings:
    output_root: str = "downloaded"
    workers: int = 8
    timeout: float = 15.0
    user_agent: str = USER_AGENT
    rewrite_css: bool = True


@dataclass(frozen=True)
class FetchedAsset:
    url: str
    content_type: str
    content: bytes

    @property
    def is_stylesheet(self) -> bool:
        return "text/css" in self.content_type.lower()


@dataclass
class MirrorResult:
    start_url: str
    index_path: Path
    resolved: Dict[str, str] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    @property
    def asset_count(self) -> int:
        return len(self.resolved)


# -------------------- URL utils --------------------


def resolve_url(ref: Optional[str], base: str) -> Optional[str]:
    """Resolve *ref* against *base*; ``None`` when it does not parse."""
    if not ref:
        return None
    ref = ref.strip()
    if not ref:
        return None
    try:
        absu = urljoin(base, ref)
        parts = urlsplit(absu)
        # port is parsed lazily; touching it surfaces bad ports
        parts.port
    except ValueError:
        return None
    if not parts.scheme:
        return None
    return absu


def origin_of(url: str) -> Tuple[str, str, Optional[int]]:
    p = urlsplit(url)
    scheme = p.scheme.lower()
    return scheme, (p.hostname or ""), p.port or DEFAULT_PORTS.get(scheme)


def is_same_origin(url: str, origin: Tuple[str, str, Optional[int]]) -> bool:
    try:
        return origin_of(url) == origin
    except ValueError:
        return False


def filter_same_origin(
    urls: Iterable[str], origin: Tuple[str, str, Optional[int]]
) -> Set[str]:
    return {u for u in urls if is_same_origin(u, origin)}


def validate_start_url(value: str) -> str:
    value = (value or "").strip()
    try:
        p = urlsplit(value)
        p.port
    except ValueError as e:
        raise ValueError(f"invalid URL {value!r}: {e}") from e
    if p.scheme.lower() not in {"http", "https"} or not p.hostname:
        raise ValueError(f"invalid URL {value!r}: use http:// or https://")
    return urlunsplit((p.scheme.lower(), p.netloc, p.path or "/", p.query, p.fragment))


def host_token_for(url: str) -> str:
    host = urlsplit(url).hostname or "host"
    return host.replace(".", "_").replace(":", "_")


# -------------------- Path mapping --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)[:200]
    return name or "index"


def ext_from_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    ct = content_type.lower()
    if "text/html" in ct:
        return ".html"
    if "text/css" in ct:
        return ".css"
    if "javascript" in ct:
        return ".js"
    if "image/" in ct:
        sub = ct.split("image/", 1)[1].split(";")[0].strip()
        if sub == "jpeg":
            sub = "jpg"
        elif sub == "svg+xml":
            sub = "svg"
        return "." + sub if sub else ""
    if "font/" in ct:
        return ".woff2"
    return ""


def ext_from_url_or_type(url: str, content_type: Optional[str]) -> str:
    ext = posixpath.splitext(urlsplit(url).path)[1].lower()
    if ext:
        return ext
    return ext_from_type(content_type)


def subdir_for_ext(ext: str) -> str:
    if ext == ".css":
        return "css"
    if ext in {".js", ".mjs"}:
        return "js"
    if ext in IMAGE_EXTS:
        return "img"
    if ext in FONT_EXTS:
        return "fonts"
    if ext in {".html", ""}:
        return ""
    return "assets"


def derive_local_path(host_token: str, url: str, content_type: Optional[str]) -> str:
    path = urlsplit(url).path
    ext = ext_from_url_or_type(url, content_type)
    subdir = subdir_for_ext(ext)
    name = sanitize_filename(posixpath.basename(path.rstrip("/")) or "index")
    if ext and not posixpath.splitext(name)[1]:
        name += ext
    if subdir:
        return posixpath.join(host_token, subdir, name)
    return posixpath.join(host_token, name)


# -------------------- HTML utils --------------------


def bs4_parse(markup: Union[str, bytes]) -> BeautifulSoup:
    try:
        return BeautifulSoup(markup, "lxml")
    except Exception:
        return BeautifulSoup(markup, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


# -------------------- Extraction --------------------


def parse_srcset(v: str) -> List[Tuple[str, str]]:
    """Split a srcset value into ``(url, descriptor)`` pairs."""
    entries: List[Tuple[str, str]] = []
    if not v:
        return entries
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        entries.append((parts[0], " ".join(parts[1:])))
    return entries


def iter_asset_refs(soup: BeautifulSoup) -> Iterator[Tuple[object, str, str]]:
    for selector, attr in ASSET_ATTRS:
        for tag in soup.select(selector):
            val = tag.get(attr)
            if val:
                yield tag, attr, val


def extract_from_document(soup: BeautifulSoup, base_url: str) -> Set[str]:
    urls: Set[str] = set()
    for _, attr, val in iter_asset_refs(soup):
        refs = [u for u, _ in parse_srcset(val)] if attr in SRCSET_ATTRS else [val]
        for ref in refs:
            absu = resolve_url(ref, base_url)
            if absu:
                urls.add(absu)
    return urls


def iter_css_refs(css_text: str) -> Iterator[str]:
    for m in CSS_REF_RE.finditer(css_text):
        yield (m.group(2) if m.group(2) is not None else m.group(4)).strip()


def extract_from_stylesheet(css_text: str, base_url: str) -> Set[str]:
    urls: Set[str] = set()
    for ref in iter_css_refs(css_text):
        absu = resolve_url(ref, base_url)
        if absu:
            urls.add(absu)
    return urls


# -------------------- HTTP + storage --------------------


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    # one attempt per URL; redirects are still followed by requests
    retry = Retry(total=0, read=False, raise_on_status=False)
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=settings.workers,
        pool_maxsize=settings.workers,
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = settings.user_agent
    return s


def fetch_resource(session: requests.Session, url: str, timeout: float) -> FetchedAsset:
    resp = session.get(url, timeout=timeout)
    if not 200 <= resp.status_code < 300:
        raise requests.HTTPError(f"HTTP {resp.status_code} for {url}", response=resp)
    return FetchedAsset(
        url=url,
        content_type=resp.headers.get("Content-Type") or "",
        content=resp.content,
    )


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def save_bytes(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="surrogateescape")


# -------------------- Discovery state --------------------


class PendingSet:
    """Insert-only set of URLs queued for download."""

    def __init__(self, init: Optional[Iterable[str]] = None):
        self._urls: Dict[str, None] = dict.fromkeys(init or [])
        self.lock = Lock()

    def add(self, url: str) -> bool:
        with self.lock:
            if url in self._urls:
                return False
            self._urls[url] = None
            return True

    def snapshot(self) -> List[str]:
        with self.lock:
            return list(self._urls)

    def __contains__(self, url: str) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


class ResolvedMap:
    """URL -> local path, written at most once per URL."""

    def __init__(self):
        self._paths: Dict[str, str] = {}
        self.lock = Lock()

    def set_if_absent(self, url: str, local_path: str) -> bool:
        with self.lock:
            if url in self._paths:
                return False
            self._paths[url] = local_path
            return True

    def get(self, url: str) -> Optional[str]:
        return self._paths.get(url)

    def as_dict(self) -> Dict[str, str]:
        with self.lock:
            return dict(self._paths)

    def __contains__(self, url: str) -> bool:
        return url in self._paths

    def __len__(self) -> int:
        return len(self._paths)


# -------------------- Fetch pool --------------------


class FetchPool:
    """Downloads a growing set of same-origin URLs in waves until no new URL shows up.

    Style sheets are scanned after download and their same-origin references
    are fed back into ``pending``; the next wave picks them up.  Each URL is
    attempted once per run, failures included.
    """

    def __init__(
        self,
        session: requests.Session,
        settings: Settings,
        origin: Tuple[str, str, Optional[int]],
        host_token: str,
        fetch: Optional[Callable[[str], FetchedAsset]] = None,
    ):
        self.session = session
        self.settings = settings
        self.origin = origin
        self.host_token = host_token
        self.output_root = Path(settings.output_root)
        self.fetch = fetch or (
            lambda u: fetch_resource(self.session, u, self.settings.timeout)
        )
        self.pending = PendingSet()
        self.resolved = ResolvedMap()
        self.stylesheets: Set[str] = set()
        self.failed: Set[str] = set()
        self._attempted: Set[str] = set()
        self._lock = Lock()

    def run(
        self, seeds: Iterable[str], exclude: Iterable[str] = ()
    ) -> ResolvedMap:
        # already fetched elsewhere, e.g. the seed page itself
        self._attempted.update(exclude)
        for u in filter_same_origin(seeds, self.origin):
            self.pending.add(u)
        wave_no = 0
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            while True:
                before = len(self.pending)
                wave = [
                    u
                    for u in self.pending.snapshot()
                    if u not in self._attempted and u not in self.resolved
                ]
                if not wave:
                    break
                wave_no += 1
                logging.info("wave %d: %d URL(s)", wave_no, len(wave))
                self._attempted.update(wave)
                futures = {pool.submit(self.download_one, u): u for u in wave}
                for fut in as_completed(futures):
                    fut.result()
                if len(self.pending) == before:
                    break
        return self.resolved

    def download_one(self, url: str) -> Optional[str]:
        try:
            asset = self.fetch(url)
        except requests.RequestException as e:
            logging.warning("failed %s: %s", url, e)
            with self._lock:
                self.failed.add(url)
            return None

        local_rel = derive_local_path(self.host_token, url, asset.content_type)
        try:
            save_bytes(self.output_root / local_rel, asset.content)
        except OSError as e:
            logging.warning("failed to save %s -> %s: %s", url, local_rel, e)
            with self._lock:
                self.failed.add(url)
            return None
        self.resolved.set_if_absent(url, local_rel)
        logging.info("downloaded asset: %s -> %s", url, local_rel)

        if asset.is_stylesheet:
            with self._lock:
                self.stylesheets.add(url)
            found = extract_from_stylesheet(decode_text(asset.content), url)
            for u in filter_same_origin(found, self.origin):
                if self.pending.add(u):
                    logging.debug("found in %s: %s", url, u)
        return local_rel


# -------------------- Rewriters --------------------


def local_ref(local_path: str, host_token: str) -> str:
    return posixpath.relpath(local_path, host_token)


def rewrite_srcset(
    value: str, resolved: ResolvedMap, start_url: str, host_token: str
) -> str:
    parts = []
    changed = False
    for url_part, desc in parse_srcset(value):
        absu = resolve_url(url_part, start_url)
        p = resolved.get(absu) if absu else None
        changed = changed or p is not None
        url_out = local_ref(p, host_token) if p is not None else url_part
        parts.append(f"{url_out} {desc}".strip())
    if not changed:
        return value
    return ", ".join(parts)


def rewrite_document(
    soup: BeautifulSoup, resolved: ResolvedMap, start_url: str, host_token: str
) -> BeautifulSoup:
    for tag, attr, val in iter_asset_refs(soup):
        if attr in SRCSET_ATTRS:
            tag[attr] = rewrite_srcset(val, resolved, start_url, host_token)
            continue
        absu = resolve_url(val, start_url)
        p = resolved.get(absu) if absu else None
        if p is None:
            continue
        tag[attr] = "./" + local_ref(p, host_token)
        for rm in STRIP_ON_REWRITE:
            if rm in tag.attrs:
                del tag.attrs[rm]
    return soup


def rewrite_css_text(
    css_text: str, css_url: str, css_local: str, resolved: ResolvedMap
) -> str:
    css_dir = posixpath.dirname(css_local)

    def map_url(u: str) -> str:
        absu = resolve_url(u, css_url)
        p = resolved.get(absu) if absu else None
        if p is None:
            return u
        return posixpath.relpath(p, css_dir)

    def repl(m: re.Match) -> str:
        if m.group(2) is not None:
            q = m.group(1) or ""
            return f"url({q}{map_url(m.group(2).strip())}{q})"
        q = m.group(3)
        return f"@import {q}{map_url(m.group(4).strip())}{q}"

    return CSS_REF_RE.sub(repl, css_text)


def rewrite_stylesheets(
    stylesheets: Iterable[str], resolved: ResolvedMap, output_root: Path
) -> None:
    for css_url in sorted(stylesheets):
        css_local = resolved.get(css_url)
        if css_local is None:
            continue
        css_path = output_root / css_local
        text = decode_text(css_path.read_bytes())
        new_text = rewrite_css_text(text, css_url, css_local, resolved)
        if new_text != text:
            save_bytes(css_path, new_text.encode("utf-8", errors="surrogateescape"))


# -------------------- Main: single page --------------------


def mirror_page(
    start_url: str,
    settings: Settings,
    session: Optional[requests.Session] = None,
) -> MirrorResult:
    start_url = validate_start_url(start_url)
    origin = origin_of(start_url)
    host_token = host_token_for(start_url)
    out_root = Path(settings.output_root)
    site_dir = out_root / host_token
    site_dir.mkdir(parents=True, exist_ok=True)
    session = session or build_session(settings)

    logging.info("Start: %s", start_url)
    logging.info("Output: %s", site_dir)

    # seed failures propagate
    page = fetch_resource(session, start_url, settings.timeout)
    soup = bs4_parse(page.content)

    seeds = filter_same_origin(extract_from_document(soup, start_url), origin)
    pool = FetchPool(session, settings, origin, host_token)
    resolved = pool.run(seeds, exclude=[start_url])

    if settings.rewrite_css:
        rewrite_stylesheets(pool.stylesheets, resolved, out_root)

    rewrite_document(soup, resolved, start_url, host_token)
    index_path = site_dir / "index.html"
    save_bytes(index_path, serialize_html(soup).encode("utf-8"))

    return MirrorResult(
        start_url=start_url,
        index_path=index_path,
        resolved=resolved.as_dict(),
        failed=sorted(pool.failed),
    )


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        if sys.version_info >= (3, 11):
            import tomllib
        else:
            import tomli as tomllib
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Mirror a single page and its same-origin assets to disk.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", nargs="?", default=None, help="http(s) URL (prompted if omitted)")
    p.add_argument(
        "-o", "--output-root", type=str, default="downloaded", help="output directory"
    )
    p.add_argument("--workers", type=int, default=8, help="concurrent downloads")
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument("--user-agent", type=str, default=USER_AGENT, help="User-Agent header")
    p.add_argument(
        "--no-rewrite-css",
        action="store_true",
        help="leave url()/@import references inside downloaded CSS untouched",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            if isinstance(cfg.get("general"), dict):
                flat.update(cfg["general"])
            flat.pop("general", None)
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def prompt_for_url(
    read: Callable[[str], str] = input, attempts: int = MAX_PROMPT_ATTEMPTS
) -> str:
    for _ in range(attempts):
        try:
            return validate_start_url(read("URL to mirror (e.g. https://example.com): "))
        except ValueError as e:
            print(e)
    raise ValueError(f"no valid URL after {attempts} attempts")


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        url = validate_start_url(args.url) if args.url else prompt_for_url()
    except ValueError as e:
        print(f"Invalid URL: {e}")
        sys.exit(1)

    settings = Settings(
        output_root=args.output_root,
        workers=max(1, args.workers),
        timeout=max(0.1, args.timeout),
        user_agent=args.user_agent,
        rewrite_css=not args.no_rewrite_css,
    )

    try:
        result = mirror_page(url, settings)
    except requests.RequestException as e:
        print(f"Critical error: {e}")
        sys.exit(1)

    print(f"Saved to: {result.index_path}")
    print(f"Assets: {result.asset_count}")
    print(f"Start URL: {result.start_url}")


if __name__ == "__main__":
    main()
