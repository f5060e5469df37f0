from src.response_cache import ResponseCache


class _FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance_ms(self, ms):
        self.now += ms / 1000


def _record(url, tel="03-1234-5678"):
    return {"ok": True, "url": url, "structured": {"telephone": tel}}


def test_set_then_get_returns_equal_record_with_age():
    clock = _FakeClock()
    cache = ResponseCache(ttl_ms=1000, max_entries=10, clock=clock)
    cache.set("https://a.jp/", _record("https://a.jp/"))
    clock.advance_ms(250)

    hit = cache.get("https://a.jp/")
    assert hit is not None
    record, age_ms = hit
    assert record == _record("https://a.jp/")
    assert age_ms == 250


def test_get_returns_a_copy():
    cache = ResponseCache(ttl_ms=1000, max_entries=10, clock=_FakeClock())
    cache.set("u", _record("u"))
    first, _ = cache.get("u")
    first["structured"]["telephone"] = None
    second, _ = cache.get("u")
    assert second["structured"]["telephone"] == "03-1234-5678"


def test_expired_entry_is_removed_on_read():
    clock = _FakeClock()
    cache = ResponseCache(ttl_ms=1000, max_entries=10, clock=clock)
    cache.set("u", _record("u"))
    clock.advance_ms(1001)
    assert cache.get("u") is None
    assert "u" not in cache
    assert len(cache) == 0


def test_insert_at_capacity_evicts_least_recently_used():
    cache = ResponseCache(ttl_ms=60_000, max_entries=2, clock=_FakeClock())
    cache.set("a", _record("a"))
    cache.set("b", _record("b"))
    assert cache.get("a") is not None  # a を最新にする

    cache.set("c", _record("c"))

    assert len(cache) == 2
    assert "a" in cache and "c" in cache
    assert "b" not in cache


def test_overwrite_same_url_does_not_evict():
    cache = ResponseCache(ttl_ms=60_000, max_entries=2, clock=_FakeClock())
    cache.set("a", _record("a"))
    cache.set("b", _record("b"))
    cache.set("b", _record("b", tel="06-6789-1234"))
    assert len(cache) == 2
    assert cache.get("b")[0]["structured"]["telephone"] == "06-6789-1234"


def test_purge_single_and_all():
    cache = ResponseCache(ttl_ms=60_000, max_entries=5, clock=_FakeClock())
    for key in ("a", "b", "c"):
        cache.set(key, _record(key))
    assert cache.purge("b") == 1
    assert cache.purge("missing") == 0
    assert cache.purge() == 2
    assert cache.status() == {"entries": 0, "ttlMs": 60_000, "maxEntries": 5}
