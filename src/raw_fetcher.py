# src/raw_fetcher.py
import asyncio
import logging
import re
import time
from typing import Any, Optional

import requests

from .bundle_traversal import SKIP_EMPTY, SKIP_HTTP_ERROR, SKIP_TIMEOUT, FetchOutcome
from .source_scanner import SourceKind

log = logging.getLogger(__name__)

DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/125.0.0.0 Safari/537.36"
)


class RawHtmlFetcher:
    """
    ブラウザを通さずページ自身の HTML を素の HTTP GET で取り直す（html2 ステージ用）。
    失敗時は例外を投げず skipped の FetchOutcome を返す。
    """

    def __init__(self, timeout_ms: int = 8000, user_agent: str = DEFAULT_UA):
        self.timeout_ms = int(timeout_ms)
        self.user_agent = user_agent
        self.http_session: Optional[requests.Session] = requests.Session()

    def close(self) -> None:
        if self.http_session:
            self.http_session.close()
        self.http_session = None

    def _session_get(self, url: str, **kwargs: Any):
        if self.http_session:
            return self.http_session.get(url, **kwargs)
        return requests.get(url, **kwargs)

    @staticmethod
    def _detect_html_encoding(resp: requests.Response, raw: bytes) -> str:
        """
        レスポンスヘッダが ISO-8859-1 固定で返ってくるサイト対策。
        meta charset → apparent_encoding → UTF-8 の順。
        """
        if raw:
            m = re.search(br'charset=["\']?([\w-]+)', raw[:10240], flags=re.I)
            if m:
                return m.group(1).decode("ascii", "ignore") or "utf-8"
        if resp.apparent_encoding:
            return resp.apparent_encoding
        return "utf-8"

    async def fetch(self, url: str) -> FetchOutcome:
        timeout_sec = max(1.0, self.timeout_ms / 1000)
        started = time.monotonic()
        try:
            resp = await asyncio.to_thread(
                self._session_get,
                url,
                timeout=(timeout_sec, timeout_sec),
                headers={"User-Agent": self.user_agent, "Accept-Language": "ja,en-US;q=0.9,en;q=0.8"},
            )
        except requests.Timeout:
            log.info("[http] timeout (%.0f ms) %s", (time.monotonic() - started) * 1000, url)
            return FetchOutcome.skipped(url, SKIP_TIMEOUT, source_kind=SourceKind.HTML)
        except requests.RequestException as exc:
            log.info("[http] error %s: %s", url, exc)
            return FetchOutcome.skipped(url, SKIP_HTTP_ERROR, source_kind=SourceKind.HTML)

        status = int(resp.status_code or 0)
        content_type = resp.headers.get("Content-Type", "")
        if status < 200 or status >= 300:
            return FetchOutcome.skipped(
                url, f"status_{status}", status=status, content_type=content_type, source_kind=SourceKind.HTML,
            )
        raw = resp.content or b""
        try:
            html = raw.decode(self._detect_html_encoding(resp, raw), errors="replace")
        except LookupError:
            html = raw.decode("utf-8", errors="replace")
        if not html.strip():
            return FetchOutcome.skipped(url, SKIP_EMPTY, status=status, content_type=content_type,
                                        source_kind=SourceKind.HTML)
        return FetchOutcome.success(url, html, status=status, content_type=content_type, source_kind=SourceKind.HTML)
