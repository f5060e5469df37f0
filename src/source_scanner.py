# src/source_scanner.py
"""
取得済みテキスト（DOM本文 / HTML / JSON / JS / chunk）を1つ受け取り、
電話・郵便番号・住所行・URL・設立日断片の生候補を返す共通スキャナ。
どこから来たテキストでも同じ正規表現パスを当てる。
"""
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List

from .jp_normalizer import PREFECTURE_NAME_RE, decode_unicode_escapes


class CandidateKind(str, Enum):
    PHONE = "phone"
    ZIP = "zip"
    ADDRESS_LINE = "address_line"
    URL = "url"
    DATE_FRAGMENT = "date_fragment"


class SourceKind(str, Enum):
    DOM = "dom"
    HTML = "html"
    JSON = "json"
    JS = "js"
    CHUNK = "chunk"


ALL_FAMILIES: FrozenSet[CandidateKind] = frozenset(CandidateKind)

CONTEXT_CHARS = 60
DATE_WINDOW_CHARS = 60
ADDRESS_LINE_MIN = 6
ADDRESS_LINE_MAX = 120

PHONE_RE = re.compile(
    r"(?<!\d)"
    r"(?:\+81[-‐―－ー–—.\s]*(?:[\(（]0[\)）]\s*)?|[\(（]?0)"
    r"\d{1,4}[\)）]?[-‐―－ー–—.\s]{0,2}"
    r"\d{1,4}[-‐―－ー–—.\s]{0,2}"
    r"\d{3,4}(?!\d)"
)
TEL_HREF_RE = re.compile(r"tel:\s*([+\d(][\d\-‐―－ー–—().\s]{5,24}\d)", re.IGNORECASE)
PHONE_LABEL_RE = re.compile(
    r"代表電話|電話|(?<![a-z])telephone|(?<![a-z])tel(?![a-z])|(?<![a-z])phone|☎|℡",
    re.IGNORECASE,
)
ZIP_RE = re.compile(r"(?<![\d\-‐―－ー])〒?\s*(\d{3})[-‐―－ー]?(\d{4})(?!\d)")
CITY_RE = re.compile(r"([一-龥]{2,6}(?:市|区|町|村|郡))")
URL_RE = re.compile(r"https?://[^\s\"'<>\\)\]}`、，。]+")
DATE_LABEL_RE = re.compile(r"設立|創業|創立|foundingDate|founded|established", re.IGNORECASE)

# HTML 上の「1行」を作るため、インライン要素は空白に潰してから区切る
_INLINE_TAG_RE = re.compile(r"<\s*/?\s*(?:br|span|strong|b|em|i|small|a|font)\b[^>]*>", re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r"[\r\n<>\"|]+|\\n|\\r|\\\"")


@dataclass(frozen=True)
class RawCandidate:
    kind: CandidateKind
    value: str
    source_kind: SourceKind
    source_url: str = ""
    context_window: str = ""
    tel_link: bool = False


def expand_blob(text: str) -> str:
    """NFKC 正規化し、\\uXXXX / \\/ エスケープを展開した版を元テキストの後ろに並べる。"""
    norm = unicodedata.normalize("NFKC", text or "")
    decoded = decode_unicode_escapes(norm).replace("\\/", "/")
    if decoded != norm:
        decoded = unicodedata.normalize("NFKC", decoded)
        return f"{norm}\n{decoded}"
    return norm


def _window(text: str, start: int, end: int, chars: int = CONTEXT_CHARS) -> str:
    return text[max(0, start - chars): end + chars]


def candidate_lines(text: str) -> List[str]:
    lines: List[str] = []
    flattened = _INLINE_TAG_RE.sub(" ", text or "")
    for raw in _LINE_SPLIT_RE.split(flattened):
        line = re.sub(r"\s+", " ", raw).strip()
        if not (ADDRESS_LINE_MIN <= len(line) <= ADDRESS_LINE_MAX):
            continue
        if PREFECTURE_NAME_RE.search(line) or CITY_RE.search(line):
            lines.append(line)
    return lines


def _scan_phones(text: str, source_kind: SourceKind, source_url: str) -> List[RawCandidate]:
    out: List[RawCandidate] = []
    for m in TEL_HREF_RE.finditer(text):
        out.append(RawCandidate(
            CandidateKind.PHONE, m.group(1).strip(), source_kind, source_url,
            _window(text, m.start(), m.end()), tel_link=True,
        ))
    for m in PHONE_RE.finditer(text):
        out.append(RawCandidate(
            CandidateKind.PHONE, m.group(0).strip(), source_kind, source_url,
            _window(text, m.start(), m.end()),
        ))
    return out


def scan_blob(
    text: str,
    source_kind: SourceKind,
    source_url: str = "",
    families: Iterable[CandidateKind] = ALL_FAMILIES,
) -> List[RawCandidate]:
    families = frozenset(families)
    if not text or not families:
        return []
    blob = expand_blob(text)
    out: List[RawCandidate] = []

    if CandidateKind.PHONE in families:
        out.extend(_scan_phones(blob, source_kind, source_url))

    if CandidateKind.ZIP in families:
        for m in ZIP_RE.finditer(blob):
            out.append(RawCandidate(
                CandidateKind.ZIP, f"{m.group(1)}-{m.group(2)}", source_kind, source_url,
                _window(blob, m.start(), m.end()),
            ))

    if CandidateKind.ADDRESS_LINE in families:
        for line in candidate_lines(blob):
            out.append(RawCandidate(CandidateKind.ADDRESS_LINE, line, source_kind, source_url, line))

    if CandidateKind.URL in families:
        for m in URL_RE.finditer(blob):
            url = m.group(0).rstrip(".,;:!?'\"")
            out.append(RawCandidate(CandidateKind.URL, url, source_kind, source_url))

    if CandidateKind.DATE_FRAGMENT in families:
        for m in DATE_LABEL_RE.finditer(blob):
            fragment = blob[m.start(): m.end() + DATE_WINDOW_CHARS]
            out.append(RawCandidate(
                CandidateKind.DATE_FRAGMENT, fragment, source_kind, source_url, fragment,
            ))

    return out


def of_kind(candidates: Iterable[RawCandidate], kind: CandidateKind) -> List[RawCandidate]:
    return [c for c in candidates if c.kind == kind]
