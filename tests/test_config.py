"""Tests for configuration loading, validation and hot-reload."""

import os
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from mailbrief.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from mailbrief.config_schema import AppConfig, BriefingConfig, LabelsConfig, SinkConfig
from mailbrief.core.errors import ConfigLoadError, ConfigValidationError


class TestLoadConfig:
    """Tests for load_config()."""

    def test_loads_valid_file(self, config_file: Path):
        config = load_config(config_file)

        assert config.schedule.classification == "*/15 * * * *"
        assert config.schedule.timezone == "America/New_York"
        assert config.labels.ready_label == "mailbrief/daily-brief"
        assert config.labels.done_label == "mailbrief/daily-brief-done"
        assert config.sink.repo == "octocat/briefings"

    def test_empty_file_uses_defaults(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config.limits.max_envelopes_per_cycle == 50
        assert config.classifier.classify_threads

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("schedule: [unclosed")

        with pytest.raises(ConfigLoadError, match="parse YAML"):
            load_config(path)

    def test_non_mapping(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_validation_error_names_field(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("limits:\n  max_envelopes_per_cycle: 0\n")

        with pytest.raises(ConfigValidationError, match="limits.max_envelopes_per_cycle"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")

        with pytest.raises(ConfigValidationError, match="newer"):
            load_config(path)


class TestSchema:
    """Tests for schema validators."""

    def test_invalid_cron_rejected(self, sample_config_dict: dict[str, Any]):
        sample_config_dict["schedule"] = {"classification": "every five minutes"}

        with pytest.raises(ValidationError, match="Invalid cron expression"):
            AppConfig(**sample_config_dict)

    def test_labels_must_differ(self):
        with pytest.raises(ValidationError, match="must differ"):
            LabelsConfig(ready="brief", done="brief")

    def test_label_path_traversal_rejected(self):
        with pytest.raises(ValidationError):
            LabelsConfig(ready="../escape")

    def test_unprefixed_labels(self):
        labels = LabelsConfig(prefix="", ready="Brief", done="Briefed")

        assert labels.ready_label == "Brief"
        assert labels.done_label == "Briefed"

    @pytest.mark.parametrize("repo", ["octocat", "octocat/", "/repo", "a/b/c"])
    def test_bad_repo_format(self, repo: str):
        with pytest.raises(ValidationError, match="owner/repo"):
            SinkConfig(repo=repo)

    def test_mentions_normalized(self):
        config = BriefingConfig(mention_tags=["octocat", "@hubot", "  ", " alice "])

        assert config.mention_tags == ["@octocat", "@hubot", "@alice"]

    def test_unknown_title_placeholder_rejected(self):
        with pytest.raises(ValidationError, match="title template"):
            BriefingConfig(title_template="Brief for {user}")

    def test_negative_retry_delay_rejected(self, sample_config_dict: dict[str, Any]):
        sample_config_dict["retry"] = {"delays_seconds": [1, -1]}

        with pytest.raises(ValidationError, match="negative"):
            AppConfig(**sample_config_dict)


class TestSingletonAndReload:
    """Tests for get_config() and reload_config_if_changed()."""

    def test_get_config_caches(self, set_config_env: None):
        assert get_config() is get_config()

    def test_reload_without_load_is_noop(self):
        assert reload_config_if_changed() is False

    def test_unchanged_file_not_reloaded(self, set_config_env: None):
        get_config()

        assert reload_config_if_changed() is False

    def test_changed_file_reloaded(self, set_config_env: None, config_file: Path):
        first = get_config()
        config_file.write_text(config_file.read_text().replace("*/15", "*/5"))
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))

        assert reload_config_if_changed() is True
        assert get_config() is not first
        assert get_config().schedule.classification == "*/5 * * * *"

    def test_invalid_change_keeps_previous(self, set_config_env: None, config_file: Path):
        first = get_config()
        config_file.write_text("labels:\n  ready: same\n  done: same\n")
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))

        assert reload_config_if_changed() is False
        assert get_config() is first


class TestValidateConfigFile:
    """Tests for validate_config_file()."""

    def test_valid(self, config_file: Path):
        ok, message = validate_config_file(config_file)

        assert ok
        assert "octocat/briefings" in message

    def test_invalid(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("sink:\n  repo: nope\n")

        ok, message = validate_config_file(path)

        assert not ok
        assert message.startswith("Validation error")
