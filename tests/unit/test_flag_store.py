"""Tests for flag validation and the flag store."""

import threading
import time

import pytest

from flagengine.core.errors import ErrorCode, ValidationError
from flagengine.core.flags import (
    Condition,
    Dependency,
    FixedOutcome,
    FlagDefinition,
    FlagKind,
    FlagStore,
    RolloutOutcome,
    Snapshot,
    SnapshotListener,
    TargetingRule,
)
from flagengine.core.flags.validation import (
    decode_definition,
    find_dependency_cycle,
    validate_definition,
    validate_update,
)


class RecordingListener(SnapshotListener):
    def __init__(self):
        self.versions = []

    def on_snapshot_published(self, snapshot):
        self.versions.append(snapshot.version)


class TestValidation:
    """Tests for write-path validation."""

    def test_valid_definition(self):
        assert validate_definition(FlagDefinition(name="new-checkout", rollout_percentage=20)) == []

    def test_reports_every_violation(self):
        flag = FlagDefinition(
            name="bad name!",
            rollout_percentage=150,
            rules=(
                TargetingRule(
                    conditions=(Condition("x", "regex", value="a"),),
                    outcome=RolloutOutcome(-5),
                ),
            ),
        )
        violations = validate_definition(flag)
        assert len(violations) == 4
        assert any("flag name" in v for v in violations)
        assert any("rollout_percentage" in v for v in violations)
        assert any("unknown operator" in v for v in violations)
        assert any("rollout percentage" in v for v in violations)

    def test_range_bounds(self):
        flag = FlagDefinition(
            name="f",
            rules=(
                TargetingRule(
                    conditions=(Condition("age", "range", min=50, max=10),),
                    outcome=FixedOutcome(True),
                ),
            ),
        )
        assert any("exceeds max" in v for v in validate_definition(flag))

    def test_fail_safe_only_for_ops_kinds(self):
        release = FlagDefinition(name="f", fail_safe_value=False)
        ops = FlagDefinition(name="g", kind=FlagKind.OPS, fail_safe_value=False)
        assert validate_definition(release)
        assert validate_definition(ops) == []

    def test_self_dependency(self):
        flag = FlagDefinition(name="a", dependencies=(Dependency("a"),))
        assert any("depends on itself" in v for v in validate_definition(flag))

    def test_find_cycle(self):
        flags = {
            "a": FlagDefinition(name="a", dependencies=(Dependency("b"),)),
            "b": FlagDefinition(name="b", dependencies=(Dependency("c"),)),
            "c": FlagDefinition(name="c", dependencies=(Dependency("a"),)),
            "d": FlagDefinition(name="d", dependencies=(Dependency("missing"),)),
        }
        assert find_dependency_cycle(flags) == ["a", "b", "c", "a"]

    def test_no_cycle(self):
        flags = {
            "a": FlagDefinition(name="a", dependencies=(Dependency("b"), Dependency("c"))),
            "b": FlagDefinition(name="b", dependencies=(Dependency("c"),)),
            "c": FlagDefinition(name="c"),
        }
        assert find_dependency_cycle(flags) is None

    def test_update_closing_cycle(self):
        current = {"a": FlagDefinition(name="a", dependencies=(Dependency("b"),))}
        violations = validate_update(current, [FlagDefinition(name="b", dependencies=(Dependency("a"),))])
        assert violations == ["dependency cycle: a -> b -> a"]


class TestDecodeDefinition:
    """Tests for decoding management API payloads."""

    def test_valid_payload(self):
        definition, problems = decode_definition({
            "name": "f",
            "kind": "ops",
            "default_value": "a",
            "rules": [{"conditions": [], "outcome": {"type": "fixed", "value": "b"}}],
            "dependencies": [{"flag": "g"}],
        })
        assert problems == []
        assert definition.kind == FlagKind.OPS
        assert definition.rules[0].outcome == FixedOutcome("b")
        assert definition.dependencies == (Dependency("g"),)

    def test_collects_every_problem(self):
        definition, problems = decode_definition({
            "name": "f",
            "kind": "bogus",
            "on_value": [1],
            "rules": [
                "always",
                {"conditions": [], "outcome": {"type": "fixed", "value": None}},
                {"conditions": [], "outcome": {"type": "rollout", "percentage": 500}},
            ],
            "dependencies": ["other"],
        })
        assert len(problems) == 5
        assert any("bogus" in p for p in problems)
        assert any(p.startswith("on_value") for p in problems)
        assert any(p.startswith("rule[0]") for p in problems)
        assert any(p.startswith("rule[1]") for p in problems)
        assert any(p.startswith("dependency[0]") for p in problems)

        # Undecodable rules keep their slot so later indices still line up
        assert len(definition.rules) == 3
        assert validate_definition(definition) == [
            "rule[2] rollout percentage must be between 0 and 100, got 500"
        ]

    def test_bad_retirement_date(self):
        _, problems = decode_definition({"name": "f", "expected_retirement_at": "next spring"})
        assert problems == ["expected_retirement_at is not an ISO-8601 date: 'next spring'"]


class TestFlagStore:
    """Tests for FlagStore."""

    def test_versions_increase(self):
        store = FlagStore()
        first = store.apply_update(FlagDefinition(name="f"))
        second = store.apply_update(FlagDefinition(name="f", rollout_percentage=50))
        assert first.version == 1
        assert second.version == 2
        assert second.created_at == first.created_at
        assert store.current_snapshot().version == 2

    def test_rejected_update_leaves_store_unchanged(self):
        store = FlagStore()
        store.apply_update(FlagDefinition(name="f"))
        before = store.current_snapshot()

        with pytest.raises(ValidationError) as exc_info:
            store.apply_update(FlagDefinition(name="f", rollout_percentage=101))

        assert exc_info.value.code == ErrorCode.VALIDATION_FAILED
        assert exc_info.value.to_dict()["code"] == "VALIDATION_FAILED"
        assert store.current_snapshot() is before
        assert len(store.history("f")) == 1

    def test_batch_is_one_snapshot(self):
        store = FlagStore()
        listener = RecordingListener()
        store.add_listener(listener)
        store.apply_batch([FlagDefinition(name="a"), FlagDefinition(name="b")])
        assert store.current_snapshot().version == 1
        assert listener.versions == [1]

    def test_batch_rejected_as_a_whole(self):
        store = FlagStore()
        with pytest.raises(ValidationError) as exc_info:
            store.apply_batch([FlagDefinition(name="a"), FlagDefinition(name="b", rollout_percentage=-1)])
        assert exc_info.value.violations[0].startswith("b: ")
        assert store.get("a") is None

    def test_history(self):
        store = FlagStore()
        store.apply_update(FlagDefinition(name="f", rollout_percentage=10))
        store.apply_update(FlagDefinition(name="f", rollout_percentage=20))
        history = store.history("f")
        assert [d.version for d in history] == [1, 2]
        assert [d.rollout_percentage for d in history] == [10, 20]
        assert store.history("unknown") == []

    def test_retire(self):
        store = FlagStore()
        store.apply_update(
            FlagDefinition(
                name="f",
                default_value=True,
                rollout_percentage=50,
                rules=(TargetingRule(conditions=(), outcome=FixedOutcome(True)),),
            )
        )
        retired = store.retire("f")
        assert retired.version == 2
        assert retired.enabled is False
        assert retired.rules == ()
        assert retired.rollout_percentage == 0
        assert retired.default_value == retired.off_value
        assert store.retire("missing") is None

    def test_listener_errors_are_contained(self):
        class Broken(SnapshotListener):
            def on_snapshot_published(self, snapshot):
                raise RuntimeError("boom")

        store = FlagStore()
        store.add_listener(Broken())
        assert store.apply_update(FlagDefinition(name="f")).version == 1

    def test_initial_snapshot_keeps_versions(self):
        snapshot = Snapshot.from_definitions(9, [FlagDefinition(name="f", version=4)])
        store = FlagStore(initial=snapshot)
        assert store.current_snapshot().version == 9
        assert store.apply_update(FlagDefinition(name="f")).version == 5

    def test_readers_see_whole_snapshots(self):
        """Concurrent readers never observe a partially applied batch."""
        store = FlagStore()
        store.apply_batch([FlagDefinition(name="a"), FlagDefinition(name="b")])
        errors = []
        done = threading.Event()

        def writer():
            for pct in range(1, 101):
                store.apply_batch([
                    FlagDefinition(name="a", rollout_percentage=pct),
                    FlagDefinition(name="b", rollout_percentage=pct),
                ])
            done.set()

        def reader():
            while not done.is_set():
                snap = store.current_snapshot()
                if snap.get("a").rollout_percentage != snap.get("b").rollout_percentage:
                    errors.append(snap.version)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        writer()
        for t in threads:
            t.join()

        assert errors == []
        assert store.current_snapshot().version == 101

    def test_empty_initial_snapshot_keeps_version(self):
        store = FlagStore(initial=Snapshot(version=9, flags={}))
        assert store.current_snapshot().version == 9
        assert store.apply_update(FlagDefinition(name="f")).version == 1
        assert store.current_snapshot().version == 10

    def test_retire_builds_on_latest_version(self):
        store = FlagStore()
        store.apply_update(FlagDefinition(name="f", description="v1"))
        results = []

        with store._write_lock:
            worker = threading.Thread(target=lambda: results.append(store.retire("f")))
            worker.start()
            time.sleep(0.05)
            # A write that lands while the retire waits for the lock
            store._snapshot = store.current_snapshot().replace_flags(
                [FlagDefinition(name="f", version=2, description="v2")]
            )
        worker.join(timeout=5)

        retired, = results
        assert retired.version == 3
        assert retired.description == "v2"
        assert retired.enabled is False
