# main.py
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.fact_resolver import FactResolver
from src.page_renderer import PageRenderer
from src.raw_fetcher import RawHtmlFetcher
from src.response_cache import ResponseCache

# .env 読み込み
load_dotenv()

# --------------------------------------------------
# ロギング設定
# --------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
os.makedirs("logs", exist_ok=True)
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.FileHandler("logs/app.log", encoding="utf-8"),
        logging.StreamHandler(),
    ],
)
log = logging.getLogger(__name__)

# --------------------------------------------------
# 実行オプション（.env）
# --------------------------------------------------
PORT = int(os.getenv("PORT", "8080"))
BUILD_TAG = os.getenv("BUILD_TAG", "scrape-v8-fact-resolver")
HEADLESS = os.getenv("HEADLESS", "true").lower() == "true"
CACHE_TTL_MS = max(0, int(os.getenv("CACHE_TTL_MS", "600000")))  # 10分
CACHE_MAX_ENTRIES = max(1, int(os.getenv("CACHE_MAX_ENTRIES", "100")))
NAV_TIMEOUT_MS = int(os.getenv("NAV_TIMEOUT_MS", "45000"))
READY_WAIT_MS = int(os.getenv("READY_WAIT_MS", "30000"))  # .js/Firestore 待ちとの競争タイマー
RESOURCE_TIMEOUT_MS = int(os.getenv("RESOURCE_TIMEOUT_MS", "8000"))
RAW_FETCH_TIMEOUT_MS = int(os.getenv("RAW_FETCH_TIMEOUT_MS", "8000"))
MAX_CHUNK_FETCHES = max(0, int(os.getenv("MAX_CHUNK_FETCHES", "8")))

CACHE = ResponseCache(ttl_ms=CACHE_TTL_MS, max_entries=CACHE_MAX_ENTRIES)
RAW_FETCHER = RawHtmlFetcher(timeout_ms=RAW_FETCH_TIMEOUT_MS)


def build_renderer() -> PageRenderer:
    return PageRenderer(
        headless=HEADLESS,
        nav_timeout_ms=NAV_TIMEOUT_MS,
        ready_wait_ms=READY_WAIT_MS,
        resource_timeout_ms=RESOURCE_TIMEOUT_MS,
    )


def build_resolver() -> FactResolver:
    # リクエストごとにブラウザを立ち上げ、終わったら閉じる
    return FactResolver(build_renderer, RAW_FETCHER, max_chunks=MAX_CHUNK_FETCHES, build=BUILD_TAG)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    RAW_FETCHER.close()


app = FastAPI(title="jp-fact-scraper", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"ok": True}


@app.get("/__version")
async def version():
    return {"ok": True, "build": BUILD_TAG, "now": datetime.now(timezone.utc).isoformat()}


@app.get("/__cache/status")
async def cache_status():
    return CACHE.status()


@app.get("/__cache/purge")
async def cache_purge(url: Optional[str] = Query(None)):
    purged = CACHE.purge(url or None)
    log.info("[cache] purge url=%s purged=%d", url or "*", purged)
    return {"ok": True, "purged": purged, "remaining": len(CACHE)}


@app.get("/scrape")
async def scrape(url: Optional[str] = Query(None)):
    if not url or not url.strip():
        return JSONResponse(status_code=400, content={"ok": False, "error": "url is required"})
    # キャッシュキーは受け取った URL そのまま（正規化しない）
    target = url

    cached = CACHE.get(target)
    if cached is not None:
        record, age_ms = cached
        record.setdefault("debug", {})["cache"] = {"hit": True, "ageMs": age_ms}
        log.info("[scrape] cache hit %s (%d ms)", target, age_ms)
        return record

    started = time.monotonic()
    try:
        extracted = await build_resolver().resolve(target.strip())
    except Exception as exc:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        log.exception("[scrape] failed %s (%d ms)", target, elapsed_ms)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": str(exc) or type(exc).__name__, "details": {"elapsedMs": elapsed_ms}},
        )

    body = extracted.to_response(BUILD_TAG)
    body["debug"]["cache"] = {"hit": False, "ageMs": 0}
    CACHE.set(target, body)
    return body


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
