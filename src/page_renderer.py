# src/page_renderer.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playwright.async_api import (
    async_playwright, Browser, BrowserContext, Page, Route,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

from .bundle_traversal import SKIP_HTTP_ERROR, SKIP_TIMEOUT, FetchOutcome, discover_script_urls
from .jp_normalizer import compact_len, strip_tags

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/125.0.0.0 Safari/537.36"
)
EXTRA_HEADERS = {
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "accept-language": "ja,en-US;q=0.9,en;q=0.8",
    "upgrade-insecure-requests": "1",
    "sec-ch-ua": '"Chromium";v="125", "Not.A/Brand";v="24", "Google Chrome";v="125"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"Windows"',
}
# navigator.webdriver などの自動化痕跡を隠す
STEALTH_INIT_SCRIPT = """
() => {
  try {
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
    window.chrome = window.chrome || { runtime: {} };
    Object.defineProperty(navigator, 'languages', { get: () => ['ja-JP', 'ja', 'en-US', 'en'] });
    Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3] });
  } catch (_) {}
}
"""
SHADOW_TEXT_JS = """
() => {
  const out = [];
  const walker = document.createTreeWalker(document, NodeFilter.SHOW_ELEMENT);
  while (walker.nextNode()) {
    const el = walker.currentNode;
    if (el && el.shadowRoot) {
      const t = el.shadowRoot.innerText;
      if (t && t.trim()) out.push(t.trim());
    }
  }
  return out.join('\\n');
}
"""
TEXT_LEN_JS = "() => ((document.body && document.body.innerText) || '').replace(/\\s+/g, '').length"
SCRIPT_COUNT_JS = "() => document.querySelectorAll('script').length"
INNER_TEXT_JS = "() => (document.body && document.body.innerText) || ''"
DOC_TEXT_JS = "() => (document.documentElement && document.documentElement.innerText) || ''"
BODY_HTML_JS = "() => document.body ? document.body.innerHTML : ''"
ANCHORS_JS = "() => Array.from(document.querySelectorAll('a[href]')).map(a => a.href)"
SPA_CONTAINER_SELECTOR = "main, #app, #__next, #__nuxt, [data-v-app], [data-reactroot]"

HYDRATED_TEXT_LEN = 300
TEXT_POLL_TARGET = 400
BODY_TEXT_MIN = 80
BLOCKED_RESOURCE_TYPES = {"image", "media", "font"}
# 実ブラウザのナビゲーションに見せるため全リクエストに付与する
SEC_FETCH_HEADERS = {
    "sec-fetch-site": "same-origin",
    "sec-fetch-mode": "navigate",
    "sec-fetch-user": "?1",
    "sec-fetch-dest": "document",
}


@dataclass
class RenderedPage:
    url: str
    title: str = ""
    visible_text: str = ""
    html: str = ""
    body_html: str = ""
    anchors: List[str] = field(default_factory=list)
    resource_urls: List[str] = field(default_factory=list)
    debug: Dict[str, Any] = field(default_factory=dict)

    @property
    def body_text(self) -> str:
        # 可視テキストが薄い場合は body の HTML からタグを剥がしたものを使う
        if compact_len(self.visible_text) >= BODY_TEXT_MIN:
            return self.visible_text
        return strip_tags(self.body_html or self.html)


def is_ready_signal(response: Any) -> bool:
    url = response.url
    return url.endswith(".js") or "firestore.googleapis.com" in url


def new_debug(url: str) -> Dict[str, Any]:
    return {
        "url": url,
        "ua": USER_AGENT,
        "headers": dict(EXTRA_HEADERS),
        "jsUrls": [],
        "cssUrls": [],
        "jsonUrls": [],
        "jsonResponsesSeen": 0,
        "scriptsCount": 0,
        "textPoll": [],
        "innerTextLen": 0,
        "docTextLen": 0,
        "shadowTextLen": 0,
        "bodyHTMLLen": 0,
        "fullHtmlLen": 0,
        "screenshotLen": 0,
        "noscriptGone": None,
        "appVisible": None,
        "retriedLoadMainJs": False,
        "console": [],
        "pageErrors": [],
        "requestsFailed": [],
        "jsOrFirestoreSeen": {"js": False, "firestore": False},
        "waitJsOrFirestoreResolved": False,
    }


class PageRenderer:
    """
    Playwright でページを描画し、本文テキスト/HTML/リンク/リソースURLを返す。
    同じブラウザコンテキストで JS/JSON サブリソースも取得できる。
    async with で使い、抜けるときに必ずブラウザを閉じる。
    """

    def __init__(
        self,
        headless: bool = True,
        nav_timeout_ms: int = 45_000,
        ready_wait_ms: int = 30_000,
        resource_timeout_ms: int = 8_000,
        selector_timeout_ms: int = 5_000,
        text_poll_limit: int = 20,
    ):
        self.headless = headless
        self.nav_timeout_ms = int(nav_timeout_ms)
        self.ready_wait_ms = int(ready_wait_ms)
        self.resource_timeout_ms = int(resource_timeout_ms)
        self.selector_timeout_ms = int(selector_timeout_ms)
        self.text_poll_limit = max(1, int(text_poll_limit))
        self.target_url = ""
        self._pw = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None

    async def __aenter__(self) -> "PageRenderer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self):
        if self.browser:
            return
        self._pw = await async_playwright().start()
        self.browser = await self._pw.chromium.launch(
            headless=self.headless,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",  # /dev/shm不足でのクラッシュ回避
                "--disable-blink-features=AutomationControlled",
            ],
        )
        self.context = await self.browser.new_context(
            user_agent=USER_AGENT,
            service_workers="allow",
            viewport={"width": 1366, "height": 900},
            java_script_enabled=True,
            locale="ja-JP",
            timezone_id="Asia/Tokyo",
            extra_http_headers=EXTRA_HEADERS,
        )
        await self.context.add_init_script(script=STEALTH_INIT_SCRIPT)
        # 軽量化：画像/フォント/メディアをブロック、それ以外は referer/sec-fetch-* を付けて通す
        await self.context.route("**/*", self._handle_route)

    async def close(self):
        try:
            if self.context:
                await self.context.close()
        finally:
            try:
                if self.browser:
                    await self.browser.close()
            finally:
                if self._pw:
                    await self._pw.stop()
        self._pw = None
        self.browser = None
        self.context = None

    async def _handle_route(self, route: Route):
        request = route.request
        if request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return
        headers = dict(request.headers)
        if self.target_url:
            headers["referer"] = self.target_url
        headers.update(SEC_FETCH_HEADERS)
        await route.continue_(headers=headers)

    @staticmethod
    async def _eval(page: Page, script: str, default: Any) -> Any:
        try:
            return await page.evaluate(script)
        except PlaywrightError:
            return default

    def _attach_observers(self, page: Page, debug: Dict[str, Any], resource_urls: List[str]) -> None:
        def on_response(response):
            url = response.url
            ct = (response.headers.get("content-type") or "").lower()
            resource_urls.append(url)
            if "javascript" in ct or url.endswith(".js"):
                debug["jsUrls"].append(url)
                debug["jsOrFirestoreSeen"]["js"] = True
            if "text/css" in ct or url.endswith(".css"):
                debug["cssUrls"].append(url)
            if "application/json" in ct or url.endswith(".json"):
                debug["jsonUrls"].append(url)
                debug["jsonResponsesSeen"] += 1
                if "firestore.googleapis.com" in url:
                    debug["jsOrFirestoreSeen"]["firestore"] = True

        page.on("response", on_response)
        page.on("console", lambda msg: debug["console"].append({"type": msg.type, "text": msg.text}))
        page.on("pageerror", lambda err: debug["pageErrors"].append(
            {"message": err.message, "stack": str(err.stack or "")[:2000]}
        ))
        page.on("requestfailed", lambda req: debug["requestsFailed"].append(
            {"url": req.url, "error": req.failure or "unknown"}
        ))

    async def _race_ready(self, page: Page) -> bool:
        """.js / Firestore のレスポンスとタイマーを競争させ、先に終わった方で進む。"""
        signal = asyncio.ensure_future(page.wait_for_event(
            "response",
            predicate=is_ready_signal,
            timeout=self.ready_wait_ms,
        ))
        timer = asyncio.ensure_future(asyncio.sleep(self.ready_wait_ms / 1000))
        done, pending = await asyncio.wait({signal, timer}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if signal in done:
            return signal.exception() is None
        return False

    async def _poll_text(self, page: Page, debug: Dict[str, Any]) -> None:
        for _ in range(self.text_poll_limit):
            length = await self._eval(page, TEXT_LEN_JS, 0)
            debug["textPoll"].append(length)
            if length > TEXT_POLL_TARGET:
                return
            await page.wait_for_timeout(1000)

    async def _inject_scripts(self, page: Page, debug: Dict[str, Any]) -> None:
        # JS が動いた形跡がなく本文も空のとき、HTML 上の script を手動で読み込み直す
        debug["retriedLoadMainJs"] = True
        html = await page.content()
        for src in discover_script_urls(html, page.url):
            kwargs: Dict[str, str] = {"url": src}
            if src.endswith(".mjs"):
                kwargs["type"] = "module"
            try:
                await page.add_script_tag(**kwargs)
                await page.wait_for_timeout(2000)
            except PlaywrightError:
                log.debug("[page] add_script_tag failed: %s", src)
                continue
            length = await self._eval(page, TEXT_LEN_JS, 0)
            debug["textPoll"].append(length)
            if length > TEXT_POLL_TARGET:
                break

    async def _wait_selector(self, page: Page, selector: str, state: str) -> bool:
        try:
            await page.wait_for_selector(selector, state=state, timeout=self.selector_timeout_ms)
            return True
        except PlaywrightError:
            return False

    @staticmethod
    async def _screenshot(page: Page, debug: Dict[str, Any]) -> None:
        # 画像自体は返さずサイズだけ記録（描画できているかの目安）
        try:
            shot = await page.screenshot(type="jpeg", quality=60, full_page=True)
        except PlaywrightError as exc:
            log.debug("[page] screenshot failed: %s", exc)
            return
        debug["screenshotLen"] = len(shot or b"")

    async def render(self, url: str) -> RenderedPage:
        if not self.context:
            await self.start()
        self.target_url = url
        started = time.monotonic()
        debug = new_debug(url)
        resource_urls: List[str] = []
        page = await self.context.new_page()
        try:
            self._attach_observers(page, debug, resource_urls)
            page.set_default_navigation_timeout(self.nav_timeout_ms)
            page.set_default_timeout(12_000)

            await page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            debug["waitJsOrFirestoreResolved"] = await self._race_ready(page)
            try:
                await page.wait_for_load_state("networkidle", timeout=12_000)
            except PlaywrightTimeoutError:
                pass
            await page.wait_for_timeout(1000)

            debug["noscriptGone"] = await self._wait_selector(page, "noscript, p.warning", "hidden")
            debug["appVisible"] = await self._wait_selector(page, SPA_CONTAINER_SELECTOR, "visible")
            await self._poll_text(page, debug)
            if all(v == 0 for v in debug["textPoll"]) and len(debug["jsUrls"]) <= 2:
                await self._inject_scripts(page, debug)

            debug["scriptsCount"] = await self._eval(page, SCRIPT_COUNT_JS, 0)
            shadow_text = await self._eval(page, SHADOW_TEXT_JS, "")
            try:
                title = await page.title()
            except PlaywrightError:
                title = ""
            html = await page.content()
            inner_text = await self._eval(page, INNER_TEXT_JS, "")
            doc_text = await self._eval(page, DOC_TEXT_JS, "")
            body_html = await self._eval(page, BODY_HTML_JS, "")
            anchors = await self._eval(page, ANCHORS_JS, [])
            await self._screenshot(page, debug)
        finally:
            await page.close()

        visible = "\n".join(t for t in (inner_text, doc_text, shadow_text) if t).strip()
        debug["innerTextLen"] = len(inner_text)
        debug["docTextLen"] = len(doc_text)
        debug["shadowTextLen"] = len(shadow_text)
        debug["bodyHTMLLen"] = len(body_html)
        debug["fullHtmlLen"] = len(html)
        debug["hydrated"] = compact_len(visible) > HYDRATED_TEXT_LEN or debug["appVisible"] is True
        debug["renderMs"] = int((time.monotonic() - started) * 1000)
        log.info("[page] rendered %s text=%d html=%d (%d ms)", url, len(visible), len(html), debug["renderMs"])
        return RenderedPage(
            url=url,
            title=title,
            visible_text=visible,
            html=html,
            body_html=body_html,
            anchors=list(anchors or []),
            resource_urls=resource_urls,
            debug=debug,
        )

    async def fetch(self, url: str) -> FetchOutcome:
        """同じブラウザコンテキスト（Cookie/ヘッダ共有）でサブリソースを GET する。"""
        if not self.context:
            await self.start()
        try:
            resp = await self.context.request.get(url, timeout=self.resource_timeout_ms)
        except PlaywrightTimeoutError:
            return FetchOutcome.skipped(url, SKIP_TIMEOUT)
        except PlaywrightError as exc:
            log.debug("[fetch] error %s: %s", url, exc)
            return FetchOutcome.skipped(url, SKIP_HTTP_ERROR)
        try:
            content_type = resp.headers.get("content-type", "")
            if not resp.ok:
                return FetchOutcome.skipped(url, f"status_{resp.status}", status=resp.status, content_type=content_type)
            try:
                body = await resp.text()
            except (PlaywrightError, UnicodeDecodeError):
                return FetchOutcome.skipped(url, SKIP_HTTP_ERROR, status=resp.status, content_type=content_type)
            return FetchOutcome.success(url, body, status=resp.status, content_type=content_type)
        finally:
            await resp.dispose()
