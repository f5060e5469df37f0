# src/jp_normalizer.py
import re
import unicodedata
from datetime import date
from typing import Optional, Tuple

from bs4 import BeautifulSoup

PREFECTURE_NAMES = [
    "北海道", "青森県", "岩手県", "宮城県", "秋田県", "山形県", "福島県",
    "茨城県", "栃木県", "群馬県", "埼玉県", "千葉県", "東京都", "神奈川県",
    "新潟県", "富山県", "石川県", "福井県", "山梨県", "長野県",
    "岐阜県", "静岡県", "愛知県", "三重県",
    "滋賀県", "京都府", "大阪府", "兵庫県", "奈良県", "和歌山県",
    "鳥取県", "島根県", "岡山県", "広島県", "山口県",
    "徳島県", "香川県", "愛媛県", "高知県",
    "福岡県", "佐賀県", "長崎県", "熊本県", "大分県", "宮崎県", "鹿児島県", "沖縄県",
]
PREFECTURE_NAME_RE = re.compile("|".join(re.escape(p) for p in PREFECTURE_NAMES))

HYPHENS = "‐―－ー–—"
_HYPHEN_RE = re.compile(f"[{HYPHENS}]")

# +81 / +81 (0) を国内の先頭 0 に置き換える
_COUNTRY_PREFIX_RE = re.compile(r"^\s*\+?81[\s\-.]*(?:[\(（]0[\)）][\s\-.]*)?")
_GROUPED_PHONE_RE = re.compile(r"^(0\d{1,4})-(\d{1,4})-(\d{3,4})$")
PHONE_SHAPE_RE = re.compile(r"^0\d{1,4}-\d{1,4}-\d{3,4}$")

# テンプレート/デモサイトが埋め込むダミー番号
DUMMY_PREFIXES = ("012", "000", "007", "017", "089")
DUMMY_NUMBERS = {"0333333333", "0123456789"}
_REPEAT_DIGITS_RE = re.compile(r"(\d)\1{3,}")

ERA_BASE_YEARS = {
    "明治": 1868,
    "大正": 1912,
    "昭和": 1926,
    "平成": 1989,
    "令和": 2019,
}
_ERA_YEAR_RE = re.compile(r"(明治|大正|昭和|平成|令和)\s*(\d{1,2}|元)\s*年")

# YYYY年[M月[D日]] か YYYY/M[/D]（- . も可）。日は「日」か月と同じ区切りがある場合のみ読む
DATE_TOKEN_RE = re.compile(
    r"(?<!\d)(?P<y>(?:1[89]|20)\d{2})(?!\d)"
    r"(?:"
    r"\s*年(?:\s*(?P<m>\d{1,2})\s*月(?:\s*(?P<d>\d{1,2})\s*日)?)?"
    r"|\s*(?P<sep>[/\-.])\s*(?P<m2>\d{1,2})(?!\d)(?:\s*(?P=sep)\s*(?P<d2>\d{1,2})(?!\d))?"
    r")?"
)

_UNICODE_ESCAPE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    s = unicodedata.normalize("NFKC", str(raw)).strip()
    s = _HYPHEN_RE.sub("-", s)
    if s.startswith("+") or s.startswith("81"):
        s = _COUNTRY_PREFIX_RE.sub("0", s, count=1)
    # 空白/括弧/ドットは区切りとしてハイフン扱い
    s = re.sub(r"[\s().（）]+", "-", s)
    s = re.sub(r"[^\d-]", "", s)
    s = re.sub(r"-{2,}", "-", s).strip("-")
    digits = s.replace("-", "")
    if not re.fullmatch(r"0\d{8,10}", digits):
        return None

    grouped = _GROUPED_PHONE_RE.match(s)
    if grouped:
        return s

    if len(digits) == 10 and digits[:2] in ("03", "06"):
        formatted = f"{digits[:2]}-{digits[2:6]}-{digits[6:]}"
    elif len(digits) == 11:
        formatted = f"{digits[:4]}-{digits[4:7]}-{digits[7:]}"
    elif len(digits) == 10:
        formatted = f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    else:
        m = re.match(r"^(0\d{1,3})(\d{2,4})(\d{4})$", digits)
        if not m:
            return None
        formatted = f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    if not PHONE_SHAPE_RE.match(formatted):
        return None
    return formatted


def phone_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", unicodedata.normalize("NFKC", value or ""))


def is_dummy_phone(number: Optional[str]) -> bool:
    digits = phone_digits(number)
    if not digits:
        return False
    if digits.startswith(DUMMY_PREFIXES):
        return True
    if _REPEAT_DIGITS_RE.search(digits):
        return True
    return digits in DUMMY_NUMBERS


def replace_era_years(text: str) -> str:
    """和暦の年（平成10年, 令和元年 など）を西暦の「YYYY年」に置き換える。"""

    def _sub(m: re.Match) -> str:
        base = ERA_BASE_YEARS[m.group(1)]
        year_str = m.group(2)
        year_num = 1 if year_str == "元" else int(year_str)
        if year_num <= 0:
            return m.group(0)
        return f"{base + year_num - 1}年"

    return _ERA_YEAR_RE.sub(_sub, text or "")


def parse_date_token(text: Optional[str]) -> Optional[Tuple[str, int]]:
    """
    text の先頭にある日付トークンを読み (ISO日付, 粒度) を返す。
    粒度は 3=年月日 / 2=年月 / 1=年のみ。
    読み取った月日が暦として成立しない場合は None（粗い粒度へは落とさない）。
    """
    if not text:
        return None
    norm = replace_era_years(unicodedata.normalize("NFKC", text))
    m = DATE_TOKEN_RE.search(norm)
    if not m:
        return None
    year = int(m.group("y"))
    month_str = m.group("m") or m.group("m2")
    day_str = m.group("d") or m.group("d2")
    month = int(month_str) if month_str else None
    day = int(day_str) if day_str else None
    try:
        parsed = date(year, month or 1, day or 1)
    except ValueError:
        return None
    granularity = 3 if day is not None else (2 if month is not None else 1)
    return parsed.isoformat(), granularity


def normalize_date_fragment(text: Optional[str]) -> Optional[str]:
    token = parse_date_token(text)
    return token[0] if token else None


def decode_unicode_escapes(text: Optional[str]) -> str:
    if not text or "\\u" not in text:
        return text or ""
    return _UNICODE_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), text)


def strip_tags(html: Optional[str]) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def compact_len(text: Optional[str]) -> int:
    return len(re.sub(r"\s+", "", text or ""))
