"""Tests for ConfigRegistry activation, versioning and directory loading."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from idlc.collaborators import InMemoryStore, StaleVersionError
from idlc.config import FRAGMENTS_DIRNAME, TEAMS_DIRNAME
from idlc.registry import ConfigRegistry, DirectoryConfigSource, describe_config
from idlc.resolver import ConfigResolutionError
from idlc.validator import ValidationError


class TestActivation:
    def test_versions_increment(
        self, store: InMemoryStore, registry: ConfigRegistry, linear_team: Callable[..., dict[str, Any]]
    ) -> None:
        store.put_team_config(linear_team())
        assert registry.activate("abc").version == 1
        store.put_team_config(linear_team("abc", ("A", "B")))
        assert registry.activate("abc").version == 2
        assert registry.active("abc").version == 2
        assert registry.get_version("abc", 1).get_status("C") is not None
        assert registry.teams() == ["abc"]

    def test_failed_activation_keeps_active(
        self, store: InMemoryStore, registry: ConfigRegistry, linear_team: Callable[..., dict[str, Any]]
    ) -> None:
        store.put_team_config(linear_team())
        registry.activate("abc")
        broken = linear_team()
        broken["transitions"].append({"from": "C", "to": ["nowhere"]})
        store.put_team_config(broken)
        with pytest.raises(ValidationError, match="unknown_status"):
            registry.activate("abc")
        assert registry.active("abc").version == 1

    def test_unknown_team(self, registry: ConfigRegistry) -> None:
        with pytest.raises(KeyError, match="No team config found"):
            registry.activate("ghost")
        with pytest.raises(KeyError, match="No active config"):
            registry.active("ghost")

    def test_resolution_error_propagates(self, store: InMemoryStore, registry: ConfigRegistry) -> None:
        store.put_team_config({"team": {"id": "orphan"}, "extends": "missing"})
        with pytest.raises(ConfigResolutionError):
            registry.activate("orphan")

    def test_activate_all_collects_failures(
        self, store: InMemoryStore, registry: ConfigRegistry, linear_team: Callable[..., dict[str, Any]]
    ) -> None:
        store.put_team_config(linear_team())
        store.put_team_config({"team": {"id": "orphan"}, "extends": "missing"})
        activated, failures = registry.activate_all()
        assert [c.team_id for c in activated] == ["abc"]
        assert list(failures) == ["orphan"]
        assert isinstance(failures["orphan"], ConfigResolutionError)

    def test_old_versions_served_from_store(
        self, store: InMemoryStore, linear_team: Callable[..., dict[str, Any]]
    ) -> None:
        store.put_team_config(linear_team())
        ConfigRegistry(store, store=store).activate("abc")
        fresh = ConfigRegistry(store, store=store)
        assert fresh.get_version("abc", 1).team_id == "abc"
        with pytest.raises(KeyError):
            fresh.get_version("abc", 7)


class TestCheck:
    def test_ok_with_lineage(
        self, store: InMemoryStore, registry: ConfigRegistry, platform_team: dict[str, Any]
    ) -> None:
        store.put_team_config(platform_team)
        report = registry.check("platform")
        assert report.ok
        assert report.lineage == ("default", "platform")
        with pytest.raises(KeyError):
            registry.active("platform")

    def test_reports_validation_errors(self, store: InMemoryStore, registry: ConfigRegistry) -> None:
        store.put_team_config(
            {
                "team": {"id": "bad"},
                "stages": [{"id": "s", "terminal": True}],
                "statuses": [{"id": "x", "stage_id": "s"}, {"id": "y", "stage_id": "other"}],
            }
        )
        report = registry.check("bad")
        assert not report.ok
        assert {i.kind for i in report.validation_issues} >= {"unknown_stage"}

    def test_missing_team(self, registry: ConfigRegistry) -> None:
        report = registry.check("nobody")
        assert not report.ok
        assert report.resolution_issues[0].kind == "unknown_base"


class TestDescribe:
    def test_describe_default(self, registry: ConfigRegistry) -> None:
        info = describe_config(registry.activate("default"))
        assert info["team_id"] == "default"
        assert info["initial_status"] == "triage"
        assert info["edges"]["in-dev"] == ["canceled", "done", "todo"]
        assert info["edges"]["done"] == []
        assert info["rules"] == ["record-delivery"]
        assert json.loads(json.dumps(info)) == info


class TestDirectoryConfigSource:
    def _write(self, root: Path, sub: str, name: str, payload: Any) -> None:
        (root / sub).mkdir(parents=True, exist_ok=True)
        (root / sub / name).write_text(payload if isinstance(payload, str) else json.dumps(payload))

    def test_loads_teams_and_fragments(self, tmp_path: Path) -> None:
        self._write(tmp_path, FRAGMENTS_DIRNAME, "qa.json", {"stages": [{"id": "qa"}]})
        self._write(
            tmp_path,
            TEAMS_DIRNAME,
            "web.json",
            {"team": {"id": "web"}, "extends": "default", "stages": [{"$ref": "qa"}]},
        )
        source = DirectoryConfigSource(tmp_path)
        assert source.team_ids() == ["web"]
        assert source.get_fragment("qa") == {"stages": [{"id": "qa"}]}
        assert source.get_fragment("progressive-rollout") is not None
        assert source.get_team_config("default") is not None

    def test_invalid_files_skipped(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        self._write(tmp_path, TEAMS_DIRNAME, "broken.json", "{not json")
        self._write(tmp_path, TEAMS_DIRNAME, "list.json", [1, 2])
        self._write(tmp_path, TEAMS_DIRNAME, "noid.json", {"team": {}})
        self._write(tmp_path, FRAGMENTS_DIRNAME, "scalar.json", "42")
        with caplog.at_level("WARNING"):
            source = DirectoryConfigSource(tmp_path)
        assert source.team_ids() == []
        assert source.get_fragment("scalar") is None
        assert caplog.text.count("Skipping") == 4

    def test_loads_yaml_documents(self, tmp_path: Path) -> None:
        self._write(tmp_path, FRAGMENTS_DIRNAME, "qa.yml", "stages:\n  - id: qa\n    name: QA\n")
        self._write(
            tmp_path,
            TEAMS_DIRNAME,
            "platform.yaml",
            "team:\n  id: platform\nextends: default\nstages:\n  - $ref: qa\n",
        )
        source = DirectoryConfigSource(tmp_path)
        assert source.team_ids() == ["platform"]
        assert source.get_fragment("qa") == {"stages": [{"id": "qa", "name": "QA"}]}
        config = ConfigRegistry(source).activate("platform")
        assert config.get_stage("qa") is not None

    def test_invalid_yaml_skipped(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        self._write(tmp_path, TEAMS_DIRNAME, "broken.yaml", "team: [unclosed\n")
        self._write(tmp_path, TEAMS_DIRNAME, "scalar.yml", "just text\n")
        with caplog.at_level("WARNING"):
            source = DirectoryConfigSource(tmp_path)
        assert source.team_ids() == []
        assert caplog.text.count("Skipping") == 2

    def test_disabled_builtin(self, tmp_path: Path) -> None:
        source = DirectoryConfigSource(tmp_path, enabled_templates=[])
        assert source.get_team_config("default") is None

    def test_team_file_shadows_builtin(self, tmp_path: Path, linear_team: Callable[..., dict[str, Any]]) -> None:
        self._write(tmp_path, TEAMS_DIRNAME, "default.json", linear_team("default"))
        source = DirectoryConfigSource(tmp_path)
        team = source.get_team_config("default")
        assert team is not None
        assert team.sections["stages"] == ({"id": "work", "name": "Work"},)


class TestTeamConfigEdits:
    def test_versions_track_saves(self, store: InMemoryStore, linear_team: Callable[..., dict[str, Any]]) -> None:
        assert store.team_config_version("abc") == 0
        assert store.save_team_config(linear_team(), expected_version=0) == 1
        store.put_team_config(linear_team("abc", ("A", "B")))
        assert store.team_config_version("abc") == 2

    def test_stale_edit_rejected(self, store: InMemoryStore, linear_team: Callable[..., dict[str, Any]]) -> None:
        store.put_team_config(linear_team())
        first_read = store.team_config_version("abc")
        second_read = store.team_config_version("abc")

        store.save_team_config(linear_team("abc", ("A", "B")), expected_version=first_read)
        with pytest.raises(StaleVersionError) as exc_info:
            store.save_team_config(linear_team("abc", ("A", "B", "C", "D")), expected_version=second_read)
        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        team = store.get_team_config("abc")
        assert team is not None
        assert [s["id"] for s in team.sections["statuses"]] == ["A", "B"]

    def test_concurrent_edits_one_wins(
        self, store: InMemoryStore, linear_team: Callable[..., dict[str, Any]]
    ) -> None:
        store.put_team_config(linear_team())
        version = store.team_config_version("abc")
        barrier = threading.Barrier(2)
        results: list[str] = []

        def edit(statuses: tuple[str, ...]) -> None:
            barrier.wait(timeout=5)
            try:
                store.save_team_config(linear_team("abc", statuses), expected_version=version)
            except StaleVersionError:
                results.append("stale")
            else:
                results.append("saved")

        threads = [threading.Thread(target=edit, args=(s,)) for s in (("A", "B"), ("A", "C"))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert sorted(results) == ["saved", "stale"]
        assert store.team_config_version("abc") == version + 1
