"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
import yaml

from receipt_reconciler.config import (
    Config,
    ConfigValidationError,
    create_default_config,
    load_config,
)

ENV_VARS = (
    "MAILBOX_URL",
    "MAILBOX_TOKEN",
    "MAILBOX_TIMEOUT",
    "RECONCILER_AUTO_CONNECT_THRESHOLD",
    "RECONCILER_JOB_TIMEOUT",
    "RECONCILER_STATE_DB",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadConfig:
    """Test YAML loading with defaults and env overrides."""

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test a missing file yields the documented defaults."""
        config = load_config(tmp_path / "absent.yaml")

        assert config.matching.auto_connect_threshold == 75
        assert config.matching.transaction_auto_match_threshold == 85
        assert config.matching.suggestion_threshold == 50
        assert config.matching.max_score == 95
        assert config.search.great_match_count == 2
        assert config.search.job_timeout_seconds == 120
        assert config.sync.buffer_days == 7
        assert config.sync.stale_after_minutes == 30
        assert config.search.default_strategies == [
            "partner_files",
            "amount_files",
            "email_attachment",
            "email_invoice",
        ]

    def test_default_file_round_trip(self, tmp_path):
        """Test the generated default file loads cleanly."""
        path = tmp_path / "config.yaml"
        create_default_config(path)

        config = load_config(path)

        assert config.mailbox.token == "YOUR_MAILBOX_TOKEN"
        assert config.sync.max_messages == 500
        assert config.documents_dir == Path("data/documents")

    def test_file_values(self, tmp_path):
        """Test values from the file override defaults."""
        path = _write(
            tmp_path / "config.yaml",
            {
                "search": {"great_match_count": 3, "default_strategies": ["partner_files"]},
                "sync": {"buffer_days": 14},
                "state_db_path": "/tmp/x.db",
            },
        )

        config = load_config(path)

        assert config.search.great_match_count == 3
        assert config.search.default_strategies == ["partner_files"]
        assert config.sync.buffer_days == 14
        assert config.state_db_path == Path("/tmp/x.db")

    def test_env_overrides(self, tmp_path, monkeypatch):
        """Test environment variables win over the file."""
        path = _write(tmp_path / "config.yaml", {"mailbox": {"token": "from-file"}})
        monkeypatch.setenv("MAILBOX_TOKEN", "from-env")
        monkeypatch.setenv("RECONCILER_AUTO_CONNECT_THRESHOLD", "80")
        monkeypatch.setenv("RECONCILER_JOB_TIMEOUT", "not-a-number")

        config = load_config(path)

        assert config.mailbox.token == "from-env"
        assert config.matching.auto_connect_threshold == 80
        assert config.search.job_timeout_seconds == 120

    def test_invalid_raises(self, tmp_path):
        """Test inconsistent thresholds are rejected."""
        path = _write(
            tmp_path / "config.yaml",
            {"matching": {"suggestion_threshold": 90, "auto_connect_threshold": 75}},
        )

        with pytest.raises(ConfigValidationError, match="suggestion_threshold"):
            load_config(path)


class TestValidate:
    """Test consistency checks."""

    def test_defaults_are_valid(self):
        """Test the default config validates."""
        assert Config().validate() == []

    def test_collects_all_errors(self):
        """Test every problem is reported."""
        config = Config()
        config.matching.max_score = 0
        config.search.great_match_count = 0
        config.sync.stale_after_minutes = 0
        config.search.default_strategies = []

        errors = config.validate()

        assert "matching.max_score must be within 1..100" in errors
        assert "search.great_match_count must be >= 1" in errors
        assert "sync.stale_after_minutes must be positive" in errors
        assert "search.default_strategies must not be empty" in errors
