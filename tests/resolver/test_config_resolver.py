"""Tests for extends inheritance and $ref fragment expansion."""

from __future__ import annotations

from typing import Any

import pytest

from idlc.collaborators import InMemoryStore
from idlc.resolver import ConfigResolutionError, ConfigResolver
from idlc.schema import TeamConfig


def _team(team_id: str, **sections: Any) -> dict[str, Any]:
    return {"team": {"id": team_id}, **sections}


@pytest.fixture
def source() -> InMemoryStore:
    return InMemoryStore(include_builtins=False)


@pytest.fixture
def resolver(source: InMemoryStore) -> ConfigResolver:
    return ConfigResolver(source)


class TestExtends:
    def test_override_by_id_keeps_parent_position(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_team_config(
            _team(
                "base",
                stages=[{"id": "a", "name": "A"}, {"id": "b", "name": "B"}, {"id": "c", "name": "C"}],
            )
        )
        child = source.put_team_config(
            {
                "team": {"id": "child"},
                "extends": "base",
                "stages": [{"id": "d", "name": "D"}, {"id": "b", "name": "B2", "required": False}],
            }
        )
        doc = resolver.resolve(child)
        stages = doc.sections["stages"]
        assert [s["id"] for s in stages] == ["a", "b", "c", "d"]
        # Whole-element replacement, not a field merge.
        assert stages[1] == {"id": "b", "name": "B2", "required": False}
        assert doc.lineage == ("base", "child")

    def test_transitions_keyed_by_from(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_team_config(
            _team("base", transitions=[{"from": "todo", "to": ["doing"]}, {"from": "doing", "to": ["done"]}])
        )
        child = source.put_team_config(
            {"team": {"id": "child"}, "extends": "base", "transitions": [{"from": "todo", "to": ["doing", "dropped"]}]}
        )
        transitions = resolver.resolve(child).sections["transitions"]
        assert transitions == [{"from": "todo", "to": ["doing", "dropped"]}, {"from": "doing", "to": ["done"]}]

    def test_multi_level_chain(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_team_config({"team": {"id": "root"}, "initial_status": "new", "statuses": [{"id": "new"}]})
        source.put_team_config({"team": {"id": "mid"}, "extends": "root", "statuses": [{"id": "mid"}]})
        leaf = source.put_team_config({"team": {"id": "leaf"}, "extends": "mid", "statuses": [{"id": "leaf"}]})
        doc = resolver.resolve(leaf)
        assert [s["id"] for s in doc.sections["statuses"]] == ["new", "mid", "leaf"]
        assert doc.initial_status == "new"
        assert doc.lineage == ("root", "mid", "leaf")

    def test_child_initial_status_wins(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_team_config({"team": {"id": "root"}, "initial_status": "new"})
        leaf = source.put_team_config({"team": {"id": "leaf"}, "extends": "root", "initial_status": "triage"})
        assert resolver.resolve(leaf).initial_status == "triage"

    def test_cycle_is_an_error(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_team_config({"team": {"id": "a"}, "extends": "b"})
        source.put_team_config({"team": {"id": "b"}, "extends": "c"})
        c = source.put_team_config({"team": {"id": "c"}, "extends": "a"})
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(c)
        kinds = [i.kind for i in exc_info.value.issues]
        assert kinds == ["circular_extends"]
        assert "c -> a -> b -> c" in exc_info.value.issues[0].message

    def test_self_extends(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        me = source.put_team_config({"team": {"id": "me"}, "extends": "me"})
        with pytest.raises(ConfigResolutionError, match="circular_extends"):
            resolver.resolve(me)

    def test_unknown_base(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        orphan = source.put_team_config({"team": {"id": "orphan"}, "extends": "ghost"})
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(orphan)
        assert exc_info.value.issues[0].kind == "unknown_base"
        assert exc_info.value.team_id == "orphan"

    def test_duplicate_ids_within_one_document(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        dup = source.put_team_config(_team("dup", stages=[{"id": "a"}, {"id": "a"}]))
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(dup)
        assert exc_info.value.issues[0].kind == "duplicate_id"

    def test_element_without_id(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        bad = source.put_team_config(_team("bad", stages=[{"name": "No id"}]))
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(bad)
        assert exc_info.value.issues[0].kind == "malformed"


class TestFragments:
    def test_ref_expands_in_place(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_fragment("review-statuses", [{"id": "review"}, {"id": "approved"}])
        team = source.put_team_config(
            _team("t", statuses=[{"id": "todo"}, {"$ref": "review-statuses"}, {"id": "done"}])
        )
        doc = resolver.resolve(team)
        assert [s["id"] for s in doc.sections["statuses"]] == ["todo", "review", "approved", "done"]

    def test_sectioned_fragment(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_fragment(
            "qa",
            {"stages": [{"id": "qa"}], "statuses": [{"id": "testing", "stage_id": "qa"}]},
        )
        team = source.put_team_config(_team("t", stages=[{"$ref": "qa"}], statuses=[{"$ref": "qa"}]))
        doc = resolver.resolve(team)
        assert doc.sections["stages"] == [{"id": "qa"}]
        assert doc.sections["statuses"] == [{"id": "testing", "stage_id": "qa"}]

    def test_nested_refs(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_fragment("inner", [{"id": "x"}])
        source.put_fragment("outer", [{"$ref": "inner"}, {"id": "y"}])
        team = source.put_team_config(_team("t", stages=[{"$ref": "outer"}]))
        assert [s["id"] for s in resolver.resolve(team).sections["stages"]] == ["x", "y"]

    def test_same_fragment_shared_across_teams(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_fragment("common", [{"id": "shared"}])
        t1 = source.put_team_config(_team("t1", stages=[{"$ref": "common"}]))
        t2 = source.put_team_config(_team("t2", stages=[{"$ref": "common"}, {"id": "own"}]))
        assert resolver.resolve(t1).sections["stages"] == [{"id": "shared"}]
        assert resolver.resolve(t2).sections["stages"] == [{"id": "shared"}, {"id": "own"}]

    def test_unknown_fragment(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        team = source.put_team_config(_team("t", stages=[{"$ref": "missing"}]))
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(team)
        assert exc_info.value.issues[0].kind == "unknown_fragment"

    def test_circular_refs(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        source.put_fragment("f1", [{"$ref": "f2"}])
        source.put_fragment("f2", [{"$ref": "f1"}])
        team = source.put_team_config(_team("t", stages=[{"$ref": "f1"}]))
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(team)
        assert [i.kind for i in exc_info.value.issues] == ["circular_ref"]

    def test_all_issues_reported(self, source: InMemoryStore, resolver: ConfigResolver) -> None:
        team = source.put_team_config(
            _team("t", stages=[{"$ref": "nope"}], statuses=[{"$ref": "also-nope"}, "not-a-dict"])
        )
        with pytest.raises(ConfigResolutionError) as exc_info:
            resolver.resolve(team)
        kinds = sorted(i.kind for i in exc_info.value.issues)
        assert kinds == ["malformed", "unknown_fragment", "unknown_fragment"]


class TestBuiltins:
    def test_platform_extends_default_with_rollout(self, platform_team: dict[str, Any]) -> None:
        store = InMemoryStore()
        team = store.put_team_config(platform_team)
        doc = ConfigResolver(store).resolve(team)
        stage_ids = [s["id"] for s in doc.sections["stages"]]
        assert stage_ids[:6] == ["triage", "backlog", "unstarted", "started", "completed", "canceled"]
        assert stage_ids[-1] == "rollout"
        in_dev = next(t for t in doc.sections["transitions"] if t["from"] == "in-dev")
        assert "rolling-out" in in_dev["to"]
        assert [r["id"] for r in doc.sections["automation"]] == ["record-delivery", "promote-after-healthy-hour"]

    def test_resolution_is_deterministic(self, platform_team: dict[str, Any]) -> None:
        store = InMemoryStore()
        team = TeamConfig.from_dict(platform_team)
        store.put_team_config(team)
        resolver = ConfigResolver(store)
        assert resolver.resolve(team).sections == resolver.resolve(team).sections
