import pytest

from midmeet.core.cache import FileCache


def test_file_cache_expires_entries_on_read(monkeypatch, tmp_path):
    cache = FileCache(tmp_path, enabled=True, default_ttl_seconds=10)

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 0)
    cache.set("places", "nearby:1", [{"place_id": "a"}])
    assert cache.get("places", "nearby:1") == [{"place_id": "a"}]

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 11)
    assert cache.get("places", "nearby:1") is None
    assert cache.get_stale("places", "nearby:1") == [{"place_id": "a"}]


def test_file_cache_stale_if_error_returns_expired_value(monkeypatch, tmp_path):
    cache = FileCache(tmp_path, enabled=True, default_ttl_seconds=1)

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 0)
    cache.set("geocode", "forward:main st", {"lat": 1})

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 100)

    def builder():
        raise RuntimeError("upstream down")

    val = cache.get_or_set(
        "geocode",
        "forward:main st",
        builder,
        ttl_seconds=1,
        stale_if_error=True,
        stale_predicate=lambda exc: isinstance(exc, RuntimeError),
    )
    assert val == {"lat": 1}


def test_file_cache_stale_if_error_respects_predicate(monkeypatch, tmp_path):
    cache = FileCache(tmp_path, enabled=True, default_ttl_seconds=1)

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 0)
    cache.set("geocode", "forward:main st", {"lat": 1})

    monkeypatch.setattr("midmeet.core.cache.time.time", lambda: 100)

    def builder():
        raise RuntimeError("upstream down")

    with pytest.raises(RuntimeError):
        cache.get_or_set(
            "geocode",
            "forward:main st",
            builder,
            ttl_seconds=1,
            stale_if_error=True,
            stale_predicate=lambda exc: isinstance(exc, ValueError),
        )


def test_disabled_cache_always_calls_builder(tmp_path):
    cache = FileCache(tmp_path, enabled=False)
    calls = []

    def builder():
        calls.append(1)
        return {"n": len(calls)}

    assert cache.get_or_set("places", "k", builder) == {"n": 1}
    assert cache.get_or_set("places", "k", builder) == {"n": 2}
    assert not any(tmp_path.iterdir())
