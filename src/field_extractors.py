# src/field_extractors.py
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .jp_normalizer import (
    PREFECTURE_NAME_RE,
    is_dummy_phone,
    normalize_phone,
    parse_date_token,
    phone_digits,
)
from .source_scanner import (
    PHONE_LABEL_RE,
    URL_RE,
    ZIP_RE,
    CandidateKind,
    RawCandidate,
    SourceKind,
    scan_blob,
)

# ===== 電話 =====
TIER_LABELED = "labeled"
TIER_TEL_LINK = "tel_link"
TIER_SCORED = "scored"

# tel: リンクでもナビダイヤル/フリーダイヤル系は代表番号として採らない
TEL_LINK_REJECT_PREFIXES = ("0120", "0570", "0800", "0990")

_TEL_URI_RE = re.compile(r"tel:\s*(?=[+\d(])")
_VISIBLE_SEP_RE = re.compile(r"[\s\-‐―－ー–—.()（）]+")


@dataclass(frozen=True)
class PhoneResolution:
    telephone: Optional[str]
    tier: Optional[str]
    candidates: int = 0


def is_labeled(candidate: RawCandidate) -> bool:
    # href の tel: スキームや URL パス（/tel/, /phone）はラベル扱いしない（アンカー文言の TEL は残る）
    window = _TEL_URI_RE.sub(" ", candidate.context_window or "")
    window = URL_RE.sub(" ", window)
    return bool(PHONE_LABEL_RE.search(window))


def _normalized_phones(candidates: Iterable[RawCandidate]) -> List[Tuple[str, RawCandidate]]:
    out: List[Tuple[str, RawCandidate]] = []
    for cand in candidates:
        if cand.kind != CandidateKind.PHONE:
            continue
        norm = normalize_phone(cand.value)
        if not norm or is_dummy_phone(norm):
            continue
        out.append((norm, cand))
    return out


def score_phone(number: str, visible_text: str = "") -> int:
    score = 0
    if number.startswith("03-"):
        score += 3
    elif number.startswith("06-"):
        score += 2
    if visible_text:
        visible = unicodedata.normalize("NFKC", visible_text)
        if number in visible or phone_digits(number) in _VISIBLE_SEP_RE.sub("", visible):
            score += 25
    if is_dummy_phone(number):
        score -= 10
    return score


def resolve_phone(candidates: Iterable[RawCandidate], visible_text: str = "") -> PhoneResolution:
    normalized = _normalized_phones(candidates)
    if not normalized:
        return PhoneResolution(None, None, 0)

    for norm, cand in normalized:
        if is_labeled(cand):
            return PhoneResolution(norm, TIER_LABELED, len(normalized))

    for norm, cand in normalized:
        if cand.tel_link and not phone_digits(norm).startswith(TEL_LINK_REJECT_PREFIXES):
            return PhoneResolution(norm, TIER_TEL_LINK, len(normalized))

    best: Optional[str] = None
    best_score = float("-inf")
    for norm, _ in normalized:
        score = score_phone(norm, visible_text)
        # 同点は発見順（先勝ち）
        if score > best_score:
            best_score = score
            best = norm
    return PhoneResolution(best, TIER_SCORED, len(normalized))


def pick_best_phone(candidates: Iterable[RawCandidate], visible_text: str = "") -> Optional[str]:
    return resolve_phone(candidates, visible_text).telephone


def has_labeled_phone(candidates: Iterable[RawCandidate]) -> bool:
    return any(is_labeled(cand) for _, cand in _normalized_phones(candidates))


# ===== 住所 =====
LOCALITY_RE = re.compile(
    r"^("
    r"[^\d\s,、]{1,8}?市[^\d\s,、]{1,5}?区"
    r"|[^\d\s,、]{1,8}?郡[^\d\s,、]{1,8}?[町村]"
    r"|[^\d\s,、]{1,8}?[市区町村]"
    r")"
)
_STREET_CUT_RE = re.compile(r"(?:TEL|Tel|tel|電話|☎|℡|FAX|Fax|fax|ファックス)[:：.．]?\s*")
_MAP_CUT_RE = re.compile(r"(地図アプリ|地図で見る|マップ|Google\s*マップ|地図|map|アクセス|ルート)", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedAddress:
    postal_code: str
    address_region: str
    address_locality: Optional[str] = None
    street_address: Optional[str] = None
    address_country: str = "JP"

    def to_schema(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "@type": "PostalAddress",
            "postalCode": self.postal_code,
            "addressRegion": self.address_region,
        }
        if self.address_locality:
            out["addressLocality"] = self.address_locality
        if self.street_address:
            out["streetAddress"] = self.street_address
        out["addressCountry"] = self.address_country
        return out


def parse_address_line(line: Optional[str]) -> Optional[NormalizedAddress]:
    """郵便番号と都道府県が同じ行にある場合のみ住所として分解する。"""
    if not line:
        return None
    text = unicodedata.normalize("NFKC", line)
    zm = ZIP_RE.search(text)
    if not zm:
        return None
    pm = PREFECTURE_NAME_RE.search(text, zm.end()) or PREFECTURE_NAME_RE.search(text)
    if not pm:
        return None

    rest = text[pm.end():]
    rest = _STREET_CUT_RE.split(rest, maxsplit=1)[0]
    rest = re.split(r"https?://", rest, maxsplit=1)[0]
    rest = _MAP_CUT_RE.split(rest, maxsplit=1)[0]
    rest = re.sub(r"\s+", " ", rest).strip(" ,、:：-")

    locality = None
    lm = LOCALITY_RE.match(rest)
    if lm:
        locality = lm.group(1)
        rest = rest[lm.end():].strip(" ,、:：-")

    return NormalizedAddress(
        postal_code=f"{zm.group(1)}-{zm.group(2)}",
        address_region=pm.group(0),
        address_locality=locality,
        street_address=rest or None,
    )


def resolve_address(lines: Iterable[str]) -> Optional[NormalizedAddress]:
    # 先勝ち。行をまたいだ結合やスコアリングはしない
    for line in lines:
        addr = parse_address_line(line)
        if addr:
            return addr
    return None


# ===== 設立日 =====
FOUNDING_LABELS = ("設立", "創業", "創立")


def pick_founding_date(fragments: Iterable[str]) -> Optional[str]:
    """
    ラベル近傍の断片群から設立日を1つ選ぶ。
    年月日 > 年月 > 年のみ の順で、同じ粒度なら先に見つかったもの。
    """
    best: Dict[int, str] = {}
    for fragment in fragments:
        token = parse_date_token(fragment)
        if not token:
            continue
        iso, granularity = token
        best.setdefault(granularity, iso)
        if granularity == 3:
            break
    for granularity in (3, 2, 1):
        if granularity in best:
            return best[granularity]
    return None


def extract_founding_date(text: str, source_kind: SourceKind = SourceKind.HTML, source_url: str = "") -> Optional[str]:
    fragments = scan_blob(text, source_kind, source_url, families={CandidateKind.DATE_FRAGMENT})
    return pick_founding_date(c.value for c in fragments)


def label_value_pairs(html: str) -> List[Tuple[str, str]]:
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    pairs: List[Tuple[str, str]] = []
    for table in soup.find_all("table"):
        for row in table.find_all("tr"):
            cells = row.find_all(["th", "td"])
            if len(cells) < 2:
                continue
            label = cells[0].get_text(separator=" ", strip=True)
            value = cells[1].get_text(separator=" ", strip=True)
            if label and value:
                pairs.append((label, value))
    for dl in soup.find_all("dl"):
        for dt, dd in zip(dl.find_all("dt"), dl.find_all("dd")):
            label = dt.get_text(separator=" ", strip=True)
            value = dd.get_text(separator=" ", strip=True)
            if label and value:
                pairs.append((label, value))
    return pairs


def founding_date_from_label_pairs(html: str) -> Optional[str]:
    values = [
        value
        for label, value in label_value_pairs(html)
        if len(label) <= 20 and any(k in label for k in FOUNDING_LABELS)
    ]
    return pick_founding_date(values)


# ===== SNS / sameAs =====
SOCIAL_HOSTS = (
    "facebook.com", "twitter.com", "x.com", "instagram.com",
    "youtube.com", "youtu.be", "linkedin.com", "tiktok.com",
    "line.me", "note.com", "ameblo.jp", "github.com",
    "pinterest.com", "threads.net",
)
# 埋め込みウィジェットや共有ボタン用のホスト/パスは sameAs にしない
_NON_PROFILE_SUBDOMAINS = ("platform.", "connect.", "api.", "static.", "pbs.", "abs.", "graph.", "widgets.")
_SHARE_PATH_RE = re.compile(r"/(?:share|sharer|sharer\.php|intent|plugins|dialog|embed|hashtag)(?:[/.?]|$)", re.IGNORECASE)
_ASSET_EXT_RE = re.compile(r"\.(?:js|css|png|jpe?g|gif|svg|webp|ico)$", re.IGNORECASE)


def is_social_url(url: Optional[str]) -> bool:
    if not url or not url.lower().startswith(("http://", "https://")):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.netloc or "").lower().split(":")[0]
    if not any(host == d or host.endswith("." + d) for d in SOCIAL_HOSTS):
        return False
    if host.startswith(_NON_PROFILE_SUBDOMAINS):
        return False
    path = parsed.path or ""
    if not path.strip("/"):
        return False
    if _SHARE_PATH_RE.search(path) or _ASSET_EXT_RE.search(path):
        return False
    return True


def collect_social_links(urls: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for url in urls:
        if url in seen or not is_social_url(url):
            continue
        seen.add(url)
        out.append(url)
    return out
