"""
Configuration management (SSOT).

This module defines ALL configuration for the reconciler.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Scores are integer points on a 0-100 scale
- Amounts are integer minor units (cents)
- Two auto-connect thresholds exist on purpose: one for document
  auto-connect in the search pipeline, one for transaction auto-match
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class MailboxConfig:
    """Mailbox API configuration.

    The mailbox service is rate limited; the client paces its own requests
    with request_delay_ms and retries transient failures.
    """

    base_url: str = "http://localhost:8025"
    token: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3
    # Pause between consecutive API calls
    request_delay_ms: int = 200
    # Messages returned per search query
    max_results: int = 20


@dataclass
class MatchingConfig:
    """Scoring and ranking thresholds (points, 0-100)."""

    # Documents at or above this score are connected without review
    auto_connect_threshold: int = 75
    # Transactions at or above this score are matched without review
    transaction_auto_match_threshold: int = 85
    # Minimum score to show as a suggestion
    suggestion_threshold: int = 50
    strong_label_threshold: int = 75
    likely_label_threshold: int = 40
    max_score: int = 95
    max_results: int = 20
    # Residual amount considered balanced (minor units)
    balance_tolerance_minor: int = 100


@dataclass
class SearchConfig:
    """Search pipeline settings."""

    great_match_threshold: int = 75
    # Remaining strategies are skipped once this many great matches connected
    great_match_count: int = 2
    # Overall execution ceiling for one job
    job_timeout_seconds: int = 120
    max_retries: int = 3
    # Mailbox candidates outside this window are ignored
    email_date_window_days: int = 180
    # Local documents outside this window are ignored by amount search
    local_date_window_days: int = 90
    max_queries: int = 3
    default_strategies: list[str] = field(
        default_factory=lambda: [
            "partner_files",
            "amount_files",
            "email_attachment",
            "email_invoice",
        ]
    )


@dataclass
class SyncConfig:
    """Mailbox sync scheduling settings."""

    buffer_days: int = 7
    # Coverage used when the ledger has no transactions
    default_lookback_days: int = 90
    manual_rate_limit_minutes: int = 5
    # Processing jobs older than this are failed by the stale sweep
    stale_after_minutes: int = 30
    # Messages requested per sync range
    max_messages: int = 500


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    mailbox: MailboxConfig = field(default_factory=MailboxConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    documents_dir: Path = field(default_factory=lambda: Path("data/documents"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []
        matching = self.matching

        if not self.mailbox.base_url:
            errors.append("mailbox.base_url is required")
        if self.mailbox.timeout_seconds <= 0:
            errors.append("mailbox.timeout_seconds must be positive")

        # Thresholds must be sensible
        if not 0 < matching.max_score <= 100:
            errors.append("matching.max_score must be within 1..100")
        if matching.likely_label_threshold > matching.strong_label_threshold:
            errors.append("likely_label_threshold must be <= strong_label_threshold")
        if matching.strong_label_threshold > matching.max_score:
            errors.append("strong_label_threshold must be <= max_score")
        if matching.suggestion_threshold > matching.auto_connect_threshold:
            errors.append("suggestion_threshold must be <= auto_connect_threshold")
        if matching.auto_connect_threshold > matching.max_score:
            errors.append("auto_connect_threshold must be <= max_score")

        if self.search.great_match_count < 1:
            errors.append("search.great_match_count must be >= 1")
        if self.search.job_timeout_seconds <= 0:
            errors.append("search.job_timeout_seconds must be positive")
        if not self.search.default_strategies:
            errors.append("search.default_strategies must not be empty")

        if self.sync.buffer_days < 0:
            errors.append("sync.buffer_days must be >= 0")
        if self.sync.stale_after_minutes <= 0:
            errors.append("sync.stale_after_minutes must be positive")

        return errors


def _int_from_env(name: str, default: int) -> int:
    """Read an integer override from the environment, keeping default on garbage."""
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - MAILBOX_URL
    - MAILBOX_TOKEN
    - MAILBOX_TIMEOUT (request timeout in seconds)
    - RECONCILER_AUTO_CONNECT_THRESHOLD
    - RECONCILER_JOB_TIMEOUT (job execution ceiling in seconds)
    - RECONCILER_STATE_DB

    Raises:
        ConfigValidationError: If the resulting configuration is invalid
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Mailbox config
    mailbox_data = data.get("mailbox", {})
    mailbox = MailboxConfig(
        base_url=os.environ.get(
            "MAILBOX_URL", mailbox_data.get("base_url", "http://localhost:8025")
        ),
        token=os.environ.get("MAILBOX_TOKEN", mailbox_data.get("token", "")),
        timeout_seconds=_int_from_env(
            "MAILBOX_TIMEOUT", mailbox_data.get("timeout_seconds", 30)
        ),
        max_retries=mailbox_data.get("max_retries", 3),
        request_delay_ms=mailbox_data.get("request_delay_ms", 200),
        max_results=mailbox_data.get("max_results", 20),
    )

    # Matching config
    matching_data = data.get("matching", {})
    matching = MatchingConfig(
        auto_connect_threshold=_int_from_env(
            "RECONCILER_AUTO_CONNECT_THRESHOLD",
            matching_data.get("auto_connect_threshold", 75),
        ),
        transaction_auto_match_threshold=matching_data.get(
            "transaction_auto_match_threshold", 85
        ),
        suggestion_threshold=matching_data.get("suggestion_threshold", 50),
        strong_label_threshold=matching_data.get("strong_label_threshold", 75),
        likely_label_threshold=matching_data.get("likely_label_threshold", 40),
        max_score=matching_data.get("max_score", 95),
        max_results=matching_data.get("max_results", 20),
        balance_tolerance_minor=matching_data.get("balance_tolerance_minor", 100),
    )

    # Search config
    search_data = data.get("search", {})
    search = SearchConfig(
        great_match_threshold=search_data.get("great_match_threshold", 75),
        great_match_count=search_data.get("great_match_count", 2),
        job_timeout_seconds=_int_from_env(
            "RECONCILER_JOB_TIMEOUT", search_data.get("job_timeout_seconds", 120)
        ),
        max_retries=search_data.get("max_retries", 3),
        email_date_window_days=search_data.get("email_date_window_days", 180),
        local_date_window_days=search_data.get("local_date_window_days", 90),
        max_queries=search_data.get("max_queries", 3),
    )
    if search_data.get("default_strategies"):
        search.default_strategies = list(search_data["default_strategies"])

    # Sync config
    sync_data = data.get("sync", {})
    sync = SyncConfig(
        buffer_days=sync_data.get("buffer_days", 7),
        default_lookback_days=sync_data.get("default_lookback_days", 90),
        manual_rate_limit_minutes=sync_data.get("manual_rate_limit_minutes", 5),
        stale_after_minutes=sync_data.get("stale_after_minutes", 30),
        max_messages=sync_data.get("max_messages", 500),
    )

    # State DB
    state_db = os.environ.get("RECONCILER_STATE_DB", data.get("state_db_path", "data/state.db"))

    config = Config(
        mailbox=mailbox,
        matching=matching,
        search=search,
        sync=sync,
        state_db_path=Path(state_db),
        documents_dir=Path(data.get("documents_dir", "data/documents")),
    )

    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))

    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Receipt Reconciler Configuration
#
# Scores are points on a 0-100 scale, amounts are minor units (cents).

mailbox:
  base_url: "http://localhost:8025"       # Mailbox API URL
  token: "YOUR_MAILBOX_TOKEN"
  timeout_seconds: 30                      # Per-request timeout
  max_retries: 3                           # Retries for 429/5xx responses
  request_delay_ms: 200                    # Pause between API calls
  max_results: 20                          # Messages per search query

matching:
  auto_connect_threshold: 75               # Connect documents at or above this score
  transaction_auto_match_threshold: 85     # Auto-match transactions at or above this score
  suggestion_threshold: 50                 # Show suggestions at or above this score
  strong_label_threshold: 75
  likely_label_threshold: 40
  max_score: 95                            # No match is ever certain
  max_results: 20
  balance_tolerance_minor: 100             # 1.00 in the transaction currency

search:
  great_match_threshold: 75
  great_match_count: 2                     # Stop searching after this many great matches
  job_timeout_seconds: 120                 # Execution ceiling per job
  max_retries: 3
  email_date_window_days: 180
  local_date_window_days: 90
  max_queries: 3
  default_strategies:
    - partner_files
    - amount_files
    - email_attachment
    - email_invoice

sync:
  buffer_days: 7                           # Added around the ledger date span
  default_lookback_days: 90                # Coverage when the ledger is empty
  manual_rate_limit_minutes: 5
  stale_after_minutes: 30                  # Processing jobs older than this are failed
  max_messages: 500                        # Messages requested per sync range

# State database path
state_db_path: "data/state.db"

# Downloaded attachments are stored here
documents_dir: "data/documents"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
