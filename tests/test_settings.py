"""Tests for .idlc/ discovery and config.json settings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from idlc.config import DEFAULT_SETTINGS, IDLC_DIR_NAME, find_idlc_root, read_config, write_config


@pytest.fixture
def idlc_dir(tmp_path: Path) -> Path:
    d = tmp_path / IDLC_DIR_NAME
    d.mkdir()
    return d


class TestFindRoot:
    def test_walks_up(self, idlc_dir: Path) -> None:
        nested = idlc_dir.parent / "src" / "pkg"
        nested.mkdir(parents=True)
        assert find_idlc_root(nested) == idlc_dir.resolve()

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match=r"No \.idlc/ directory found"):
            find_idlc_root(tmp_path)


class TestReadConfig:
    def test_missing_file_gives_defaults(self, idlc_dir: Path) -> None:
        assert read_config(idlc_dir) == DEFAULT_SETTINGS

    def test_round_trip(self, idlc_dir: Path) -> None:
        write_config(idlc_dir, {"tick_interval": 5, "lock_wait": 0.25, "enabled_templates": []})
        settings = read_config(idlc_dir)
        assert settings["tick_interval"] == 5.0
        assert settings["lock_wait"] == 0.25
        assert settings["enabled_templates"] == []
        assert settings["action_timeout"] == DEFAULT_SETTINGS["action_timeout"]

    def test_corrupt_file(self, idlc_dir: Path, caplog: pytest.LogCaptureFixture) -> None:
        (idlc_dir / "config.json").write_text("{broken")
        with caplog.at_level("WARNING"):
            assert read_config(idlc_dir) == DEFAULT_SETTINGS
        assert "using defaults" in caplog.text

    def test_non_object(self, idlc_dir: Path) -> None:
        (idlc_dir / "config.json").write_text(json.dumps([1, 2]))
        assert read_config(idlc_dir) == DEFAULT_SETTINGS

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("subscriber_timeout", 0),
            ("action_timeout", -1),
            ("tick_interval", "fast"),
            ("tick_interval", True),
            ("lock_wait", -0.5),
            ("max_cascade_depth", 0),
            ("max_cascade_depth", 2.5),
            ("enabled_templates", "default"),
        ],
    )
    def test_invalid_value_falls_back(
        self, idlc_dir: Path, key: str, value: object, caplog: pytest.LogCaptureFixture
    ) -> None:
        write_config(idlc_dir, {key: value})
        with caplog.at_level("WARNING"):
            settings = read_config(idlc_dir)
        assert settings[key] == DEFAULT_SETTINGS[key]  # type: ignore[literal-required]
        assert f"Invalid {key}" in caplog.text

    def test_zero_lock_wait_is_valid(self, idlc_dir: Path) -> None:
        write_config(idlc_dir, {"lock_wait": 0, "max_cascade_depth": 3})
        settings = read_config(idlc_dir)
        assert settings["lock_wait"] == 0.0
        assert settings["max_cascade_depth"] == 3

    def test_defaults_not_shared(self, idlc_dir: Path) -> None:
        settings = read_config(idlc_dir)
        settings["enabled_templates"].append("extra")
        assert DEFAULT_SETTINGS["enabled_templates"] == ["default"]
