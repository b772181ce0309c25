"""Test fixtures and utilities."""

from datetime import date
from pathlib import Path

import pytest

from receipt_reconciler.config import Config
from receipt_reconciler.schemas.models import CandidateDocument, Partner, Source, Transaction
from receipt_reconciler.state_store import StateStore


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db: Path) -> StateStore:
    """Fresh state store with all migrations applied."""
    return StateStore(temp_db, run_migrations=True)


@pytest.fixture
def config(tmp_path, temp_db: Path) -> Config:
    """Default configuration pointing at temporary paths."""
    cfg = Config()
    cfg.state_db_path = temp_db
    cfg.documents_dir = tmp_path / "documents"
    return cfg


@pytest.fixture
def make_txn():
    """Factory for transactions with sensible defaults."""

    def _make(**overrides) -> Transaction:
        data = {
            "id": "txn-1",
            "date": date(2026, 1, 15),
            "amount": -4523,
            "currency": "EUR",
            "description": "",
        }
        data.update(overrides)
        return Transaction(**data)

    return _make


@pytest.fixture
def make_doc():
    """Factory for candidate documents."""

    def _make(**overrides) -> CandidateDocument:
        data = {"mime_type": "application/pdf"}
        data.update(overrides)
        return CandidateDocument(**data)

    return _make


@pytest.fixture
def rewe_partner() -> Partner:
    """Partner with a known email domain."""
    return Partner(
        id="partner-rewe",
        name="REWE",
        aliases=["REWE Markt GmbH"],
        email_domains=["rewe.de"],
    )


@pytest.fixture
def source(store: StateStore) -> Source:
    """An active mailbox source."""
    return store.create_source(Source(external_account_id="acct-1", email="me@example.com"))
