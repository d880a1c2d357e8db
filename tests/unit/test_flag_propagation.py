"""Tests for the propagation cache and snapshot sources."""

import logging
import threading
import time

import httpx
import pytest
from prometheus_client import REGISTRY

from flagengine.core.errors import SnapshotDecodeError, SnapshotFetchError
from flagengine.core.flags import (
    FALSE,
    TRUE,
    EvaluationContext,
    FileSnapshotSource,
    FlagDefinition,
    FlagKind,
    FlagStore,
    HttpSnapshotSource,
    PropagationCache,
    Reason,
    Snapshot,
    SnapshotSource,
    StoreSnapshotSource,
)


class ScriptedSource(SnapshotSource):
    """Source that replays snapshots and exceptions in order; the last item repeats."""

    name = "scripted"

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    def fetch(self, timeout):
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        return step


def _snap(version, *flags):
    return Snapshot.from_definitions(version, flags)


def _cache(source, **kwargs):
    kwargs.setdefault("max_attempts", 1)
    kwargs.setdefault("retry_wait_min", 0)
    kwargs.setdefault("retry_wait_max", 0)
    return PropagationCache(source, **kwargs)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestSnapshotSources:
    """Tests for snapshot sources."""

    def test_store_source(self):
        store = FlagStore()
        store.apply_update(FlagDefinition(name="f"))
        assert StoreSnapshotSource(store).fetch(1.0).version == 1

    def test_http_source_decodes_snapshot(self):
        payload = _snap(3, FlagDefinition(name="f", rollout_percentage=5)).to_dict()

        def handler(request):
            assert request.url.path == "/api/v1/snapshot"
            return httpx.Response(200, json=payload)

        client = httpx.Client(base_url="http://flags", transport=httpx.MockTransport(handler))
        snapshot = HttpSnapshotSource("http://flags", client=client).fetch(1.0)
        assert snapshot.version == 3
        assert snapshot.get("f").rollout_percentage == 5

    def test_http_source_error_status(self):
        client = httpx.Client(
            base_url="http://flags",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(SnapshotFetchError):
            HttpSnapshotSource("http://flags", client=client).fetch(1.0)

    def test_http_source_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.Client(base_url="http://flags", transport=httpx.MockTransport(handler))
        with pytest.raises(SnapshotFetchError):
            HttpSnapshotSource("http://flags", client=client).fetch(1.0)

    def test_http_source_bad_body(self):
        client = httpx.Client(
            base_url="http://flags",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
        )
        with pytest.raises(SnapshotDecodeError):
            HttpSnapshotSource("http://flags", client=client).fetch(1.0)

    def test_file_source(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text(_snap(4, FlagDefinition(name="f")).to_json())
        assert FileSnapshotSource(str(path)).fetch(1.0).version == 4
        with pytest.raises(SnapshotFetchError):
            FileSnapshotSource(str(tmp_path / "missing.json")).fetch(1.0)


class TestRefresh:
    """Tests for PropagationCache.refresh."""

    def test_refresh_installs_snapshot(self):
        cache = _cache(ScriptedSource(_snap(2, FlagDefinition(name="f", default_value=True))))
        assert cache.refresh() is True
        assert cache.version == 2
        assert cache.evaluate("f").value == TRUE

    def test_failure_keeps_last_good_snapshot(self):
        source = ScriptedSource(
            _snap(1, FlagDefinition(name="f", default_value=True)),
            SnapshotFetchError("down"),
        )
        cache = _cache(source)
        assert cache.refresh() is True
        assert cache.refresh() is False
        assert cache.refresh() is False

        assert cache.version == 1
        assert cache.evaluate("f").value == TRUE
        assert cache.consecutive_failures == 2
        assert cache.total_failures == 2
        assert "down" in cache.last_error

    def test_success_resets_consecutive_failures(self):
        source = ScriptedSource(SnapshotFetchError("down"), _snap(1))
        cache = _cache(source)
        assert cache.refresh() is False
        assert cache.refresh() is True
        assert cache.consecutive_failures == 0
        assert cache.total_failures == 1

    def test_retries_within_a_cycle(self):
        source = ScriptedSource(SnapshotFetchError("blip"), _snap(1))
        cache = _cache(source, max_attempts=3)
        assert cache.refresh() is True
        assert source.calls == 2

    def test_unexpected_error_never_escapes(self):
        cache = _cache(ScriptedSource(RuntimeError("bug")))
        assert cache.refresh() is False
        assert cache.consecutive_failures == 1

    def test_older_snapshot_ignored(self):
        source = ScriptedSource(_snap(5), _snap(3))
        cache = _cache(source)
        cache.refresh()
        cache.refresh()
        assert cache.version == 5

    def test_empty_snapshot_reports_its_version(self):
        cache = _cache(ScriptedSource(_snap(4)))
        cache.refresh()
        assert cache.version == 4
        assert cache.status()["version"] == 4

    def test_next_delay_backs_off(self):
        cache = _cache(ScriptedSource(_snap(1)), refresh_interval=10, backoff_max=50)
        assert cache._next_delay() == 10
        cache.consecutive_failures = 1
        assert cache._next_delay() == 20
        cache.consecutive_failures = 3
        assert cache._next_delay() == 50


class TestStaleness:
    """Tests for the stale-snapshot fail-safe."""

    def _flags(self):
        return _snap(
            1,
            FlagDefinition(
                name="disable-recommendations",
                kind=FlagKind.KILL_SWITCH,
                default_value=True,
                fail_safe_value=False,
            ),
            FlagDefinition(
                name="ops-throttle",
                kind=FlagKind.OPS,
                default_value="normal",
                off_value="normal",
                fail_safe_value="strict",
            ),
            FlagDefinition(name="new-ui", default_value=True),
        )

    def test_kill_switch_fail_safe_when_stale(self, clock):
        source = ScriptedSource(self._flags(), SnapshotFetchError("partition"))
        cache = _cache(source, max_staleness=600, clock=clock)
        cache.refresh()
        assert cache.evaluate("disable-recommendations").value == TRUE

        clock.advance(300)
        cache.refresh()
        assert cache.is_stale() is False
        assert cache.evaluate("disable-recommendations").reason == Reason.DEFAULT

        clock.advance(301)
        result = cache.evaluate("disable-recommendations")
        assert (result.value, result.reason) == (FALSE, Reason.KILL_SWITCH)
        assert cache.last_warning is not None
        assert cache.status()["stale"] is True

    def test_ops_fail_safe_and_release_unchanged(self, clock):
        cache = _cache(ScriptedSource(self._flags()), max_staleness=60, clock=clock)
        cache.refresh()
        clock.advance(61)

        ops = cache.evaluate("ops-throttle")
        assert (ops.value.value, ops.reason) == ("strict", Reason.DEFAULT)
        release = cache.evaluate("new-ui")
        assert (release.value, release.reason) == (TRUE, Reason.DEFAULT)

    def test_recovers_after_refresh(self, clock):
        cache = _cache(ScriptedSource(self._flags()), max_staleness=60, clock=clock)
        cache.refresh()
        clock.advance(120)
        assert cache.evaluate("disable-recommendations").reason == Reason.KILL_SWITCH

        cache.refresh()
        assert cache.evaluate("disable-recommendations").value == TRUE
        assert cache.status()["stale"] is False

    def test_stale_transition_reported_once(self, clock, caplog):
        cache = _cache(ScriptedSource(self._flags()), max_staleness=60, clock=clock)
        cache.refresh()
        clock.advance(61)

        def evaluate_many():
            for _ in range(50):
                cache.evaluate("ops-throttle")

        with caplog.at_level(logging.WARNING, logger="flagengine.core.flags.propagation"):
            threads = [threading.Thread(target=evaluate_many) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        warnings = [r for r in caplog.records if "StaleSnapshotWarning" in r.getMessage()]
        assert len(warnings) == 1
        assert REGISTRY.get_sample_value("flag_cache_stale") == 1

        cache.refresh()
        assert REGISTRY.get_sample_value("flag_cache_stale") == 0

    def test_staleness_disabled(self, clock):
        cache = _cache(ScriptedSource(self._flags()), max_staleness=None, clock=clock)
        cache.refresh()
        clock.advance(10 ** 6)
        assert cache.is_stale() is False


class TestCacheEvaluation:
    """Tests for evaluation through the cache."""

    def test_no_snapshot_yet(self):
        cache = _cache(ScriptedSource(SnapshotFetchError("down")))
        result = cache.evaluate("f", fallback=True)
        assert (result.value, result.reason) == (TRUE, Reason.UNKNOWN_FLAG)

    def test_bulk_evaluate(self):
        cache = _cache(
            ScriptedSource(_snap(1, FlagDefinition(name="a", default_value=True), FlagDefinition(name="b")))
        )
        cache.refresh()
        results = cache.bulk_evaluate(["a", "b", "c"], EvaluationContext("u"))
        assert results["a"].value == TRUE
        assert results["b"].value == FALSE
        assert results["c"].reason == Reason.UNKNOWN_FLAG


class TestPushAndLifecycle:
    """Tests for push notifications, the background thread and bootstrap."""

    def test_push_refreshes_inline_without_thread(self):
        store = FlagStore()
        cache = _cache(StoreSnapshotSource(store))
        store.add_listener(cache)

        store.apply_update(FlagDefinition(name="f", default_value=True))
        assert cache.version == 1
        assert cache.evaluate("f").value == TRUE

    def test_notify_ignores_known_versions(self):
        source = ScriptedSource(_snap(2))
        cache = _cache(source)
        cache.refresh()
        cache.notify(2)
        assert source.calls == 1

    def test_push_wakes_background_thread(self):
        store = FlagStore()
        cache = _cache(StoreSnapshotSource(store), refresh_interval=60)
        store.add_listener(cache)
        cache.start()
        try:
            assert _wait_for(lambda: cache.status()["loaded"])
            store.apply_update(FlagDefinition(name="f", default_value=True))
            assert _wait_for(lambda: cache.version == 1)
        finally:
            cache.stop()
        assert cache.running is False

    def test_persist_and_bootstrap(self, tmp_path):
        path = tmp_path / "flags" / "snapshot.json"
        first = _cache(ScriptedSource(_snap(7, FlagDefinition(name="f", default_value=True))), snapshot_path=str(path))
        first.refresh()
        assert path.exists()

        second = _cache(ScriptedSource(SnapshotFetchError("down")), snapshot_path=str(path))
        assert second.load_bootstrap() is True
        assert second.version == 7
        assert second.evaluate("f").value == TRUE

    def test_bootstrap_without_file(self, tmp_path):
        cache = _cache(ScriptedSource(_snap(1)), snapshot_path=str(tmp_path / "absent.json"))
        assert cache.load_bootstrap() is False

    def test_malformed_bootstrap_file(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text('{"version": 3, "flags": [{"name": "f", "dependencies": ["other"]}]}')
        source = ScriptedSource(_snap(1, FlagDefinition(name="g", default_value=True)))
        cache = _cache(source, snapshot_path=str(path), refresh_interval=60)

        assert cache.load_bootstrap() is False
        cache.start()
        try:
            assert _wait_for(lambda: cache.version == 1)
        finally:
            cache.stop()
        assert cache.evaluate("g").value == TRUE
