# src/fact_resolver.py
"""
描画済みページ + 追加取得したリソースから、フィールドごとに1つの値へ解決する。

電話/住所は全ソースから候補を集め（解決済みのフィールドはそれ以降スキャンしない）、
設立日は順序付きステージのパイプラインで最初に値を返したステージを採用する。
"""
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from bs4 import BeautifulSoup

from .bundle_traversal import MAX_CHUNK_FETCHES, BundleTraversal, FetchOutcome, TraversalReport
from .field_extractors import (
    NormalizedAddress,
    PhoneResolution,
    collect_social_links,
    extract_founding_date,
    founding_date_from_label_pairs,
    has_labeled_phone,
    resolve_address,
    resolve_phone,
)
from .jp_normalizer import strip_tags
from .page_renderer import PageRenderer, RenderedPage
from .raw_fetcher import RawHtmlFetcher
from .source_scanner import CandidateKind, RawCandidate, SourceKind, of_kind, scan_blob

log = logging.getLogger(__name__)

_HTML_TAG_RE = re.compile(r"<[a-zA-Z][^>]*>")


class FoundingDateSource(str, Enum):
    DOM = "dom"
    HTML = "html"
    HTML2 = "html2"
    JSON = "json"
    JSON_HTML = "jsonHtml"
    BUNDLE = "bundle"
    CHUNK = "chunk"


@dataclass(frozen=True)
class FoundingDateResult:
    date: str
    source: FoundingDateSource


DateStage = Tuple[FoundingDateSource, Callable[[], Optional[str]]]


class FoundingDatePipeline:
    """ステージを順に評価し、最初に値を返したステージで止まる。"""

    def __init__(self, stages: Iterable[DateStage]):
        self.stages: List[DateStage] = list(stages)
        self.attempted: List[str] = []

    def run(self) -> Optional[FoundingDateResult]:
        for source, stage in self.stages:
            self.attempted.append(source.value)
            value = stage()
            if value:
                return FoundingDateResult(value, source)
        return None


class CandidatePool:
    """1リクエスト分の生候補。解決済みフィールドのパターンは以降のソースに当てない。"""

    def __init__(self):
        self.candidates: List[RawCandidate] = []
        self.address: Optional[NormalizedAddress] = None
        self.phone_labeled = False
        self.scanned: List[Dict[str, Any]] = []

    def pending_families(self) -> Set[CandidateKind]:
        families = {CandidateKind.URL}
        if not self.phone_labeled:
            families.add(CandidateKind.PHONE)
        if self.address is None:
            families.update({CandidateKind.ZIP, CandidateKind.ADDRESS_LINE})
        return families

    def absorb(self, text: str, source_kind: SourceKind, source_url: str = "") -> List[RawCandidate]:
        families = self.pending_families()
        found = scan_blob(text, source_kind, source_url, families)
        self.candidates.extend(found)
        if not self.phone_labeled and has_labeled_phone(of_kind(found, CandidateKind.PHONE)):
            self.phone_labeled = True
        if self.address is None:
            self.address = resolve_address(c.value for c in of_kind(found, CandidateKind.ADDRESS_LINE))
        self.scanned.append({
            "kind": source_kind.value,
            "url": source_url,
            "families": sorted(f.value for f in families),
            "found": len(found),
        })
        return found

    def of_kind(self, kind: CandidateKind) -> List[RawCandidate]:
        return of_kind(self.candidates, kind)

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(self.of_kind(kind)) for kind in CandidateKind}


@dataclass
class ExtractionRecord:
    url: str
    title: str = ""
    body_text: str = ""
    telephone: Optional[str] = None
    phone_tier: Optional[str] = None
    address: Optional[NormalizedAddress] = None
    founding_date: Optional[FoundingDateResult] = None
    same_as: List[str] = field(default_factory=list)
    jsonld: List[Dict[str, Any]] = field(default_factory=list)
    debug: Dict[str, Any] = field(default_factory=dict)

    def structured(self) -> Dict[str, Any]:
        return {
            "telephone": self.telephone,
            "address": self.address.to_schema() if self.address else None,
            "foundingDate": self.founding_date.date if self.founding_date else None,
            "sameAs": list(self.same_as),
        }

    def to_response(self, build: str = "") -> Dict[str, Any]:
        return {
            "ok": True,
            "build": build,
            "url": self.url,
            "title": self.title,
            "bodyText": self.body_text,
            "jsonld": self.jsonld,
            "structured": self.structured(),
            "jsonldSynth": synthesize_jsonld(self),
            "debug": self.debug,
        }


def synthesize_jsonld(record: ExtractionRecord) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "@context": "https://schema.org",
        "@type": "Organization",
        "url": record.url,
    }
    if record.title:
        out["name"] = record.title
    if record.telephone:
        out["telephone"] = record.telephone
    if record.address:
        out["address"] = record.address.to_schema()
    if record.founding_date:
        out["foundingDate"] = record.founding_date.date
    if record.same_as:
        out["sameAs"] = list(record.same_as)
    return out


def extract_jsonld_objects(html: str) -> List[Dict[str, Any]]:
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    out: List[Dict[str, Any]] = []
    for node in soup.find_all("script", attrs={"type": lambda v: v and "ld+json" in str(v).lower()}):
        raw = (node.string or node.get_text(" ", strip=True) or "").strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        candidates: List[Any] = []
        if isinstance(data, dict):
            if isinstance(data.get("@graph"), list):
                candidates.extend(data["@graph"])
            else:
                candidates.append(data)
        elif isinstance(data, list):
            candidates.extend(data)
        out.extend(obj for obj in candidates if isinstance(obj, dict))
    return out


def html_fragments_from_json(body: str) -> List[str]:
    """JSON の文字列値のうち HTML マークアップを含むもの（CMS の本文など）。"""
    try:
        data = json.loads(body)
    except ValueError:
        return []
    out: List[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, str):
            if _HTML_TAG_RE.search(node):
                out.append(node)
        elif isinstance(node, dict):
            for v in node.values():
                walk(v)
        elif isinstance(node, list):
            for v in node:
                walk(v)

    walk(data)
    return out


def _first_date(outcomes: Iterable[FetchOutcome]) -> Optional[str]:
    for outcome in outcomes:
        found = extract_founding_date(outcome.body, outcome.source_kind or SourceKind.JS, outcome.url)
        if found:
            return found
    return None


def _first_date_in_json_html(outcomes: Iterable[FetchOutcome]) -> Optional[str]:
    for outcome in outcomes:
        for fragment in html_fragments_from_json(outcome.body):
            found = founding_date_from_label_pairs(fragment) or extract_founding_date(
                strip_tags(fragment), SourceKind.JSON, outcome.url,
            )
            if found:
                return found
    return None


def build_date_pipeline(
    page: RenderedPage,
    raw: Optional[FetchOutcome],
    report: TraversalReport,
) -> FoundingDatePipeline:
    def dom_stage() -> Optional[str]:
        return founding_date_from_label_pairs(page.html) or extract_founding_date(
            page.visible_text, SourceKind.DOM, page.url,
        )

    def html2_stage() -> Optional[str]:
        if raw is None or not raw.ok:
            return None
        return extract_founding_date(raw.body, SourceKind.HTML, raw.url)

    return FoundingDatePipeline([
        (FoundingDateSource.DOM, dom_stage),
        (FoundingDateSource.HTML, lambda: extract_founding_date(page.html, SourceKind.HTML, page.url)),
        (FoundingDateSource.HTML2, html2_stage),
        (FoundingDateSource.JSON, lambda: _first_date(report.bodies(SourceKind.JSON))),
        (FoundingDateSource.JSON_HTML, lambda: _first_date_in_json_html(report.bodies(SourceKind.JSON))),
        (FoundingDateSource.BUNDLE, lambda: _first_date(report.bodies(SourceKind.JS))),
        (FoundingDateSource.CHUNK, lambda: _first_date(report.bodies(SourceKind.CHUNK))),
    ])


class FactResolver:
    def __init__(
        self,
        renderer_factory: Callable[[], PageRenderer],
        raw_fetcher: Optional[RawHtmlFetcher] = None,
        *,
        max_chunks: int = MAX_CHUNK_FETCHES,
        build: str = "",
    ):
        self.renderer_factory = renderer_factory
        self.raw_fetcher = raw_fetcher
        self.max_chunks = max_chunks
        self.build = build

    async def resolve(self, url: str) -> ExtractionRecord:
        started = time.monotonic()
        pool = CandidatePool()
        raw: Optional[FetchOutcome] = None

        # ブラウザは成功/失敗にかかわらず async with を抜けた時点で閉じる
        async with self.renderer_factory() as renderer:
            page = await renderer.render(url)
            pool.absorb(page.visible_text, SourceKind.DOM, url)
            pool.absorb("\n".join(page.anchors), SourceKind.DOM, url)
            pool.absorb(page.html, SourceKind.HTML, url)

            if self.raw_fetcher is not None:
                raw = await self.raw_fetcher.fetch(url)
                if raw.ok:
                    pool.absorb(raw.body, SourceKind.HTML, url)

            traversal = BundleTraversal(renderer.fetch, max_chunks=self.max_chunks)
            report = await traversal.run(
                url, page.html, page.resource_urls,
                on_body=lambda o: pool.absorb(o.body, o.source_kind or SourceKind.JS, o.url),
            )

        phone: PhoneResolution = resolve_phone(pool.of_kind(CandidateKind.PHONE), page.visible_text)
        pipeline = build_date_pipeline(page, raw, report)
        founding = pipeline.run()
        same_as = collect_social_links(c.value for c in pool.of_kind(CandidateKind.URL))

        fetches = ([raw] if raw is not None else []) + report.outcomes
        debug = dict(page.debug)
        debug.update({
            "build": self.build,
            "phoneTier": phone.tier,
            "foundingDateSource": founding.source.value if founding else None,
            "dateStagesTried": pipeline.attempted,
            "candidates": pool.counts(),
            "scanned": pool.scanned,
            "fetches": [o.to_debug() for o in fetches],
            "skipped": [o.to_debug() for o in fetches if not o.ok],
            "chunkUrls": report.chunk_urls,
            "elapsedMs": int((time.monotonic() - started) * 1000),
        })
        log.info(
            "[resolve] %s tel=%s addr=%s founded=%s(%s) sameAs=%d",
            url, phone.telephone, bool(pool.address),
            founding.date if founding else None, founding.source.value if founding else "-", len(same_as),
        )
        return ExtractionRecord(
            url=url,
            title=page.title,
            body_text=page.body_text,
            telephone=phone.telephone,
            phone_tier=phone.tier,
            address=pool.address,
            founding_date=founding,
            same_as=same_as,
            jsonld=extract_jsonld_objects(page.html),
            debug=debug,
        )
