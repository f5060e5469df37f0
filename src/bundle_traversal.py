# src/bundle_traversal.py
"""
ページ本体以外に取りに行く JS/JSON リソースの決定と逐次取得。

1巡目: script[src] / modulepreload → データっぽいネットワークリソース → <origin>/app-index.js
2巡目: 取得済みエントリーバンドル内の /chunk-<id>.js 参照（最大 MAX_CHUNK_FETCHES 件）
取得はすべてベストエフォートで、失敗は FetchOutcome(ok=False, reason=...) として残す。
"""
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .source_scanner import SourceKind

log = logging.getLogger(__name__)

MAX_CHUNK_FETCHES = 8
MAX_FIRST_PASS_FETCHES = 24
APP_INDEX_PATH = "/app-index.js"
JSON_URL_HINTS = ("googleapis", "sheets", "gviz", "cms", "data")

CHUNK_REF_RE = re.compile(r"[\w\-./]*/chunk-[A-Za-z0-9_\-]+\.js")
_ENTRY_BUNDLE_RE = re.compile(r"(?:^|/)(?:app-index|index|main|app)[\w\-.]*\.m?js$", re.IGNORECASE)

SKIP_HTTP_ERROR = "http_error"
SKIP_TIMEOUT = "timeout"
SKIP_CONTENT_TYPE = "content_type"
SKIP_EMPTY = "empty"
SKIP_BUDGET = "budget"


@dataclass(frozen=True)
class FetchOutcome:
    url: str
    ok: bool
    status: int = 0
    content_type: str = ""
    body: str = ""
    reason: str = ""
    source_kind: Optional[SourceKind] = None

    @classmethod
    def success(cls, url: str, body: str, *, status: int = 200, content_type: str = "",
                source_kind: Optional[SourceKind] = None) -> "FetchOutcome":
        return cls(url=url, ok=True, status=status, content_type=content_type, body=body, source_kind=source_kind)

    @classmethod
    def skipped(cls, url: str, reason: str, *, status: int = 0, content_type: str = "",
                source_kind: Optional[SourceKind] = None) -> "FetchOutcome":
        return cls(url=url, ok=False, status=status, content_type=content_type, reason=reason, source_kind=source_kind)

    def to_debug(self) -> dict:
        return {
            "url": self.url,
            "kind": self.source_kind.value if self.source_kind else None,
            "ok": self.ok,
            "status": self.status,
            "reason": self.reason or None,
            "bytes": len(self.body or ""),
        }


Fetcher = Callable[[str], Awaitable[FetchOutcome]]


@dataclass
class TraversalReport:
    outcomes: List[FetchOutcome] = field(default_factory=list)
    chunk_urls: List[str] = field(default_factory=list)

    def bodies(self, kind: SourceKind) -> List[FetchOutcome]:
        return [o for o in self.outcomes if o.ok and o.source_kind == kind]

    def skipped(self) -> List[FetchOutcome]:
        return [o for o in self.outcomes if not o.ok]


def _is_http(url: str) -> bool:
    return url.lower().startswith(("http://", "https://"))


def _dedupe(urls: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for u in urls:
        if u and u not in seen:
            seen.add(u)
            out.append(u)
    return out


def discover_script_urls(html: str, base_url: str) -> List[str]:
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    found: List[str] = []
    for node in soup.find_all("script", src=True):
        found.append(node.get("src") or "")
    for node in soup.find_all("link", href=True):
        rel = node.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if any(r.lower() == "modulepreload" for r in rel):
            found.append(node.get("href") or "")
    resolved = [urljoin(base_url, u.strip()) for u in found if u and u.strip()]
    return _dedupe(u for u in resolved if _is_http(u))


def looks_like_data_url(url: str) -> bool:
    if not _is_http(url):
        return False
    lowered = url.lower()
    if urlparse(lowered).path.endswith(".json"):
        return True
    return any(h in lowered for h in JSON_URL_HINTS)


def select_data_resources(resource_urls: Iterable[str], already: Iterable[str] = ()) -> List[str]:
    scheduled = set(already)
    return [u for u in _dedupe(resource_urls) if u not in scheduled and looks_like_data_url(u)]


def app_index_url(page_url: str) -> str:
    parsed = urlparse(page_url)
    return f"{parsed.scheme}://{parsed.netloc}{APP_INDEX_PATH}"


def is_entry_bundle(url: str) -> bool:
    return bool(_ENTRY_BUNDLE_RE.search(urlparse(url).path or ""))


def find_chunk_urls(body: str, base_url: str, already: Iterable[str] = (), limit: int = MAX_CHUNK_FETCHES) -> List[str]:
    # 選択順はバンドル内の出現順そのまま（優先度づけはしない）
    fetched = set(already)
    out: List[str] = []
    for m in CHUNK_REF_RE.finditer(body or ""):
        url = urljoin(base_url, m.group(0))
        if not _is_http(url) or url in fetched or url in out:
            continue
        out.append(url)
        if len(out) >= limit:
            break
    return out


def classify_content(content_type: str, url: str) -> Optional[SourceKind]:
    ct = (content_type or "").lower()
    if "javascript" in ct or "ecmascript" in ct:
        return SourceKind.JS
    if "json" in ct:
        return SourceKind.JSON
    if not ct:
        path = urlparse(url).path.lower()
        if path.endswith((".js", ".mjs")):
            return SourceKind.JS
        if path.endswith(".json"):
            return SourceKind.JSON
    return None


class BundleTraversal:
    def __init__(
        self,
        fetch: Fetcher,
        *,
        max_chunks: int = MAX_CHUNK_FETCHES,
        max_first_pass: int = MAX_FIRST_PASS_FETCHES,
    ):
        self.fetch = fetch
        self.max_chunks = max(0, int(max_chunks))
        self.max_first_pass = max(1, int(max_first_pass))

    def plan(self, page_url: str, html: str, resource_urls: Iterable[str] = ()) -> List[str]:
        scripts = discover_script_urls(html, page_url)
        data = select_data_resources(resource_urls, already=scripts)
        return _dedupe(scripts + data + [app_index_url(page_url)])

    async def _fetch_one(self, url: str, *, chunk: bool = False) -> FetchOutcome:
        outcome = await self.fetch(url)
        if not outcome.ok:
            log.debug("[fetch] skip %s reason=%s", url, outcome.reason)
            return outcome
        kind = classify_content(outcome.content_type, url)
        if kind is None:
            log.debug("[fetch] skip %s content-type=%s", url, outcome.content_type)
            return replace(outcome, ok=False, body="", reason=SKIP_CONTENT_TYPE)
        if not (outcome.body or "").strip():
            return replace(outcome, ok=False, reason=SKIP_EMPTY, source_kind=kind)
        if chunk and kind == SourceKind.JS:
            kind = SourceKind.CHUNK
        return replace(outcome, source_kind=kind)

    async def run(
        self,
        page_url: str,
        html: str,
        resource_urls: Iterable[str] = (),
        on_body: Optional[Callable[[FetchOutcome], None]] = None,
    ) -> TraversalReport:
        report = TraversalReport()
        visited: set[str] = set()

        for idx, url in enumerate(self.plan(page_url, html, resource_urls)):
            visited.add(url)
            if idx >= self.max_first_pass:
                report.outcomes.append(FetchOutcome.skipped(url, SKIP_BUDGET))
                continue
            outcome = await self._fetch_one(url)
            report.outcomes.append(outcome)
            if outcome.ok and on_body:
                on_body(outcome)

        # 2巡目: エントリーバンドルから chunk を辿る
        chunk_urls: List[str] = []
        for outcome in report.bodies(SourceKind.JS):
            if not is_entry_bundle(outcome.url):
                continue
            remaining = self.max_chunks - len(chunk_urls)
            if remaining <= 0:
                break
            chunk_urls.extend(find_chunk_urls(outcome.body, outcome.url, visited | set(chunk_urls), remaining))
        report.chunk_urls = chunk_urls

        for url in chunk_urls:
            visited.add(url)
            outcome = await self._fetch_one(url, chunk=True)
            report.outcomes.append(outcome)
            if outcome.ok and on_body:
                on_body(outcome)

        log.info(
            "[bundle] %s fetched=%d skipped=%d chunks=%d",
            page_url, len(report.outcomes) - len(report.skipped()), len(report.skipped()), len(chunk_urls),
        )
        return report
