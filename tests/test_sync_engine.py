"""End-to-end tests for SyncEngine over in-memory fake repositories.

Covers:
- Update and create scenarios with relation bookkeeping
- Idempotence and post-create round-trip
- Conflict safety under report-only, prefer-side resolution
- Delete propagation and delete idempotence
- Scope changes, transient enumeration failures, unknown state
- Dry run, direction, cancellation, tombstone purge
- Fatal relation store failures
- from_config() and run_blocking()
"""

from __future__ import annotations

import json

import pytest

from entity_sync.config_schema import build_config
from entity_sync.errors import FatalSyncError, RepositoryTimeoutError
from entity_sync.sync.classifier import PreferBPolicy
from entity_sync.sync.engine import SyncEngine
from entity_sync.sync.executor import CancellationToken
from entity_sync.sync.models import ActionKind, OutcomeStatus, RelationRecord
from entity_sync.sync.reporter import CollectingSink
from entity_sync.sync.state import InMemoryRelationStore, JsonRelationStore


def _link(repo_a, repo_b, store, a_id="a1", b_id="b1", name="Alice"):
    repo_a.add(a_id, name)
    repo_b.add(b_id, name)
    store.upsert(RelationRecord(a_id=a_id, a_version=1, b_id=b_id, b_version=1))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    async def test_changed_on_a_updates_b(self, make_engine, repo_a, repo_b, mapper, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice Smith")

        report = await make_engine().run()

        [outcome] = report.outcomes
        assert outcome.action == ActionKind.UPDATE_B
        assert outcome.status == OutcomeStatus.SUCCESS
        assert mapper.forward_calls[0][0] == {"name": "Alice Smith"}
        assert repo_b.items["b1"]["name"] == "Alice Smith"
        rel = store.get_by_a("a1")
        assert (rel.a_id, rel.a_version, rel.b_id, rel.b_version) == ("a1", 2, "b1", 2)

    async def test_new_on_a_creates_on_b(self, make_engine, repo_a, repo_b, store):
        repo_a.add("a7", "Grace", version=4)

        report = await make_engine().run()

        [outcome] = report.outcomes
        assert outcome.action == ActionKind.CREATE_ON_B
        assert outcome.b_id == "B-new-1"
        rel = store.get_by_a("a7")
        assert (rel.a_version, rel.b_id, rel.b_version) == (4, "B-new-1", 1)

    async def test_changed_on_b_updates_a(self, make_engine, repo_a, repo_b, mapper, store):
        _link(repo_a, repo_b, store)
        repo_b.edit("b1", "Alice B")

        report = await make_engine().run()

        assert report.outcomes[0].action == ActionKind.UPDATE_A
        assert repo_a.items["a1"]["name"] == "Alice B"
        assert len(mapper.backward_calls) == 1

    async def test_scope_forwarded(self, make_engine, repo_a, repo_b):
        await make_engine().run(scope_a="2024-01", scope_b="2024-02")
        assert ("list", "2024-01") in repo_a.calls
        assert ("list", "2024-02") in repo_b.calls


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestProperties:
    async def test_idempotence(self, make_engine, repo_a, repo_b):
        repo_a.add("a1", "Alice")
        repo_b.add("b1", "Bob")
        engine = make_engine()

        first = await engine.run()
        writes = len(repo_a.writes()) + len(repo_b.writes())
        second = await engine.run()

        assert len(first.mutations) == 2
        assert second.mutations == []
        assert all(o.action == ActionKind.SKIP for o in second.outcomes)
        assert len(repo_a.writes()) + len(repo_b.writes()) == writes

    async def test_round_trip_with_store_assigned_version(self, make_engine, repo_a, repo_b):
        """A provisional version from create() is replaced by the read-back."""
        repo_a.add("a1", "Alice")
        repo_b.provisional_create_version = "provisional"
        engine = make_engine()

        await engine.run()
        second = await engine.run()

        assert [o.action for o in second.outcomes] == [ActionKind.SKIP]
        assert repo_b.writes()[1:] == []

    async def test_broken_read_back_does_not_duplicate(self, make_engine, repo_a, repo_b):
        repo_a.add("a1", "Alice")
        repo_b.failures["get_versions"].append(RuntimeError("read-back broke"))
        engine = make_engine()

        first = await engine.run()
        second = await engine.run()

        assert [o.status for o in first.outcomes] == [OutcomeStatus.SUCCESS]
        assert second.mutations == []
        assert sorted(repo_a.items) == ["a1"]
        assert sorted(repo_b.items) == ["B-new-1"]

    async def test_conflict_safety(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.edit("b1", "Alice B")

        report = await make_engine().run()

        [outcome] = report.conflicts
        assert outcome.requires_attention
        assert report.needs_attention == [outcome]
        assert repo_a.writes() == [] and repo_b.writes() == []
        assert repo_a.items["a1"]["name"] == "Alice A"
        assert repo_b.items["b1"]["name"] == "Alice B"
        assert store.get_by_a("a1").a_version == 1

    async def test_conflict_reported_again_until_resolved(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.edit("b1", "Alice B")
        engine = make_engine()

        await engine.run()
        again = await engine.run()

        assert len(again.conflicts) == 1

    async def test_delete_propagates(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.remove("a1")
        engine = make_engine()

        report = await engine.run()
        second = await engine.run()

        assert report.outcomes[0].action == ActionKind.DELETE_B
        assert "b1" not in repo_b.items
        assert len(store) == 0
        assert second.outcomes == []

    async def test_deleted_on_both_sides_drops_relation(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.remove("a1")
        repo_b.remove("b1")

        report = await make_engine().run()

        assert report.outcomes[0].action == ActionKind.DROP_RELATION
        assert len(store) == 0

    async def test_isolation(self, make_engine, repo_a, repo_b, mapper, store):
        _link(repo_a, repo_b, store, "a1", "b1", "Alice")
        _link(repo_a, repo_b, store, "a2", "b2", "Bob")
        repo_a.edit("a1", "Broken")
        repo_a.edit("a2", "Bobby")
        mapper.fail_for.add("Broken")

        report = await make_engine().run()

        assert len(report.failed) == 1
        assert len(report.succeeded) == 1
        assert repo_b.items["b2"]["name"] == "Bobby"
        assert store.get_by_a("a1").a_version == 1

    async def test_sink_failure_does_not_abort_run(self, repo_a, repo_b, mapper, store):
        class FlakySink(CollectingSink):
            def record(self, outcome):
                if outcome.a_id == "a1":
                    raise RuntimeError("sink down")
                super().record(outcome)

        repo_a.add("a1", "Alice")
        repo_a.add("a2", "Bob")
        engine = SyncEngine(
            repo_a, repo_b, mapper, store, sink_factory=FlakySink
        )

        report = await engine.run()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.SUCCESS] * 2
        assert store.get_by_a("a1") is not None and store.get_by_a("a2") is not None


# ---------------------------------------------------------------------------
# Unknown state and scope
# ---------------------------------------------------------------------------


class TestUnknownState:
    async def test_out_of_scope_entity_is_not_deleted(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.hidden.add("a1")

        report = await make_engine().run()

        assert report.outcomes[0].action == ActionKind.SKIP
        assert "b1" in repo_b.items
        assert ("get_versions", ["a1"]) in repo_a.calls

    async def test_transient_enumeration_failure_skips_side(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_b.failures["list"].extend(RepositoryTimeoutError("t") for _ in range(3))

        report = await make_engine().run()

        [outcome] = report.outcomes
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.detail == "state unknown; retry next run"
        assert "a1" in repo_a.items
        assert repo_a.writes() == []

    async def test_transient_enumeration_recovers_with_retry(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.remove("a1")
        repo_b.failures["list"].append(RepositoryTimeoutError("t"))

        report = await make_engine().run()

        assert report.outcomes[0].action == ActionKind.DELETE_B

    async def test_version_lookup_failure_marks_unknown(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.hidden.add("a1")
        repo_a.failures["get_versions"].extend(RepositoryTimeoutError("t") for _ in range(3))

        report = await make_engine().run()

        assert report.outcomes[0].action == ActionKind.SKIP
        assert "b1" in repo_b.items
        assert len(store) == 1

    async def test_permanent_enumeration_failure_is_fatal(self, make_engine, repo_a):
        repo_a.failures["list"].append(ValueError("broken query"))
        with pytest.raises(FatalSyncError, match="Enumeration of A failed"):
            await make_engine().run()


# ---------------------------------------------------------------------------
# Policies and options
# ---------------------------------------------------------------------------


class TestOptions:
    async def test_dry_run_applies_nothing(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.add("b2", "Bob")

        report = await make_engine().run(dry_run=True)

        assert report.dry_run
        assert {o.action for o in report.outcomes} == {
            ActionKind.UPDATE_B,
            ActionKind.CREATE_ON_A,
        }
        assert all(o.detail == "dry run" for o in report.outcomes)
        assert repo_a.writes() == [] and repo_b.writes() == []
        assert store.get_by_a("a1").a_version == 1

    async def test_direction_a_to_b(self, make_engine, repo_a, repo_b):
        repo_b.add("b1", "Bob")
        repo_a.add("a1", "Alice")

        report = await make_engine(direction="a-to-b").run()

        assert [o.action for o in report.succeeded] == [ActionKind.CREATE_ON_B]
        assert repo_a.writes() == []

    async def test_prefer_b_overwrites_a(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.edit("b1", "Alice B")

        report = await make_engine(conflict_policy="prefer-b").run()

        assert report.outcomes[0].action == ActionKind.UPDATE_A
        assert repo_a.items["a1"]["name"] == "Alice B"

    async def test_prefer_a_recreates_deleted_loser(self, make_engine, repo_a, repo_b, store):
        """Winner edited, loser deleted: relation dropped, then re-created."""
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.remove("b1")
        engine = make_engine(conflict_policy="prefer-a")

        first = await engine.run()
        second = await engine.run()

        assert first.outcomes[0].action == ActionKind.DROP_RELATION
        assert second.outcomes[0].action == ActionKind.CREATE_ON_B
        assert repo_b.items[store.get_by_a("a1").b_id]["name"] == "Alice A"

    async def test_tombstone_then_purge(self, make_engine, repo_a, repo_b, store):
        _link(repo_a, repo_b, store)
        repo_a.edit("a1", "Alice A")
        repo_b.remove("b1")

        first = await make_engine().run()
        assert first.outcomes[0].status == OutcomeStatus.CONFLICT
        assert store.get_by_a("a1").b_tombstoned

        second = await make_engine(purge_tombstoned_relations=True).run()

        assert [o.action for o in second.outcomes] == [ActionKind.CREATE_ON_B]
        assert store.get_by_a("a1").b_id == "B-new-1"

    async def test_purge_keeps_relation_whose_side_reappeared(self, make_engine, repo_a, repo_b, store):
        repo_a.add("a1", "Alice")
        repo_b.add("b1", "Alice")
        store.upsert(
            RelationRecord(a_id="a1", a_version=1, b_id="b1", b_version=1, a_tombstoned=True)
        )

        report = await make_engine(purge_tombstoned_relations=True).run()

        assert report.mutations == []
        assert sorted(repo_a.items) == ["a1"]
        assert sorted(repo_b.items) == ["b1"]
        assert store.get_by_a("a1").tombstoned is False

    async def test_purge_keeps_relations_when_check_fails(self, make_engine, repo_a, repo_b, store):
        repo_a.add("a1", "Alice")
        repo_a.edit("a1", "Alice A")
        store.upsert(
            RelationRecord(a_id="a1", a_version=1, b_id="b1", b_version=1, b_tombstoned=True)
        )
        repo_b.failures["get_versions"].append(RuntimeError("offline"))

        report = await make_engine(purge_tombstoned_relations=True).run()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.CONFLICT]
        assert store.get_by_a("a1").b_tombstoned is True
        assert repo_b.writes() == []

    async def test_cancelled_run(self, make_engine, repo_a, repo_b):
        repo_a.add("a1", "Alice")
        token = CancellationToken()
        token.cancel()

        report = await make_engine().run(cancel_token=token)

        assert report.cancelled
        assert report.outcomes[0].error == "cancelled"
        assert repo_b.writes() == []


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class TestFatal:
    async def test_unreadable_store_aborts_before_mutation(self, repo_a, repo_b, mapper):
        class Unreadable(InMemoryRelationStore):
            def all(self):
                raise OSError("locked")

        repo_a.add("a1", "Alice")
        engine = SyncEngine(repo_a, repo_b, mapper, Unreadable())

        with pytest.raises(FatalSyncError, match="Relation store unavailable"):
            await engine.run()
        assert repo_b.writes() == []

    async def test_store_failure_mid_run(self, repo_a, repo_b, mapper, sink):
        class ReadOnly(InMemoryRelationStore):
            def upsert(self, record):
                raise OSError("read-only")

        repo_a.add("a1", "Alice")
        repo_a.add("a2", "Bob")
        engine = SyncEngine(
            repo_a, repo_b, mapper, ReadOnly(), sink_factory=lambda: sink
        )

        with pytest.raises(FatalSyncError, match="mid-run"):
            await engine.run()
        assert sink.report is not None
        assert sink.report.cancelled


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_from_config_uses_profile(self, tmp_path, repo_a, repo_b, mapper):
        unified = build_config(
            {
                "engine": {"state_dir": str(tmp_path)},
                "profiles": {"contacts": {"conflict_policy": "prefer-b"}},
            }
        )
        engine = SyncEngine.from_config(repo_a, repo_b, mapper, unified, "contacts")

        assert engine.config.conflict_policy == "prefer-b"
        assert isinstance(engine.classifier.policy, PreferBPolicy)
        assert isinstance(engine.relation_store, JsonRelationStore)
        assert engine.relation_store.path == tmp_path / "relations_contacts.json"

    def test_from_config_corrupt_store(self, tmp_path, repo_a, repo_b, mapper):
        (tmp_path / "relations_contacts.json").write_text("[", encoding="utf-8")
        unified = build_config({"engine": {"state_dir": str(tmp_path)}})
        with pytest.raises(FatalSyncError):
            SyncEngine.from_config(repo_a, repo_b, mapper, unified, "contacts")

    def test_run_blocking_persists(self, tmp_path, repo_a, repo_b, mapper):
        unified = build_config({"engine": {"state_dir": str(tmp_path)}})
        repo_a.add("a1", "Alice")
        engine = SyncEngine.from_config(repo_a, repo_b, mapper, unified, "contacts")

        report = engine.run_blocking()

        assert len(report.succeeded) == 1
        data = json.loads((tmp_path / "relations_contacts.json").read_text(encoding="utf-8"))
        assert data["relations"][0]["a_id"] == "a1"
