import threading
import time

import pytest

from gamepulse.cache import QueryCache, make_cache_key
from gamepulse.reports import GamePerformanceFilters


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class CountingLoader:
    def __init__(self, value="rows"):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return f"{self.value}-{self.calls}"


def test_fresh_entries_are_served_from_cache():
    clock = FakeClock()
    cache = QueryCache(stale_after=300, gc_after=600, clock=clock)
    loader = CountingLoader()

    assert cache.fetch("games", loader) == "rows-1"
    clock.advance(299)
    assert cache.fetch("games", loader) == "rows-1"
    assert loader.calls == 1


def test_stale_entries_are_reloaded():
    clock = FakeClock()
    cache = QueryCache(stale_after=300, gc_after=6000, clock=clock)
    loader = CountingLoader()

    cache.fetch("games", loader)
    clock.advance(300)

    assert cache.fetch("games", loader) == "rows-2"
    assert cache.refetch("games", loader) == "rows-3"


def test_concurrent_callers_share_one_load():
    cache = QueryCache()
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_loader():
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return ["row"]

    results = []

    def worker():
        results.append(cache.fetch("players", slow_loader))

    first = threading.Thread(target=worker)
    first.start()
    assert started.wait(timeout=5)

    followers = [threading.Thread(target=worker) for _ in range(4)]
    for thread in followers:
        thread.start()
    time.sleep(0.05)
    release.set()

    for thread in [first, *followers]:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert results == [["row"]] * 5


def test_failed_loads_are_not_cached():
    cache = QueryCache()
    attempts = []

    def flaky_loader():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("database unavailable")
        return "recovered"

    with pytest.raises(RuntimeError, match="database unavailable"):
        cache.fetch("developers", flaky_loader)

    assert cache.peek("developers") is None
    assert cache.fetch("developers", flaky_loader) == "recovered"
    assert len(attempts) == 2


def test_invalidate_by_report_name_keeps_other_reports():
    cache = QueryCache()
    game_key = make_cache_key("game-performance", GamePerformanceFilters(genre="RPG"))
    other_game_key = make_cache_key("game-performance", GamePerformanceFilters())
    player_key = make_cache_key("player-engagement")

    for key in (game_key, other_game_key, player_key):
        cache.fetch(key, CountingLoader())

    assert cache.invalidate("game-performance") == 2
    assert cache.peek(game_key) is None
    assert cache.peek(player_key) == "rows-1"

    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_invalidated_load_in_flight_is_not_stored():
    cache = QueryCache()

    def loader():
        cache.invalidate()
        return "outdated"

    assert cache.fetch("games", loader) == "outdated"
    assert cache.peek("games") is None


def test_idle_entries_are_garbage_collected():
    clock = FakeClock()
    cache = QueryCache(stale_after=300, gc_after=600, clock=clock)

    cache.fetch("games", CountingLoader())
    clock.advance(601)
    cache.fetch("players", CountingLoader())

    assert cache.peek("games") is None
    assert len(cache) == 1


def test_cache_keys_ignore_unset_filters():
    assert make_cache_key("game-performance", GamePerformanceFilters()) == make_cache_key(
        "game-performance"
    )
    assert make_cache_key("game-performance", GamePerformanceFilters(genre="RPG")) != (
        make_cache_key("game-performance", GamePerformanceFilters(genre="FPS"))
    )
