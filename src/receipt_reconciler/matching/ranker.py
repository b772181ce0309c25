"""Match ranker.

Scores a pool of candidate documents for one transaction and returns the
best ones above the suggestion floor. Also provides a read-only aggregation
of the documents already connected to a transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..schemas.models import CandidateDocument, Partner, Transaction
from .currency import convert_amount
from .scorer import MatchResult, MatchScorer

logger = logging.getLogger(__name__)


@dataclass
class ConnectedAmountSummary:
    """Sum of connected document amounts in the transaction currency."""

    transaction_id: str
    currency: str
    transaction_amount: int
    connected_total: int
    open_amount: int
    is_balanced: bool
    document_count: int
    # Documents without an amount or with an unconvertible currency
    unconverted_document_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "currency": self.currency,
            "transaction_amount": self.transaction_amount,
            "connected_total": self.connected_total,
            "open_amount": self.open_amount,
            "is_balanced": self.is_balanced,
            "document_count": self.document_count,
            "unconverted_document_ids": self.unconverted_document_ids,
        }


def _matches_query(doc: CandidateDocument, query: str) -> bool:
    needle = query.lower()
    haystacks = (
        doc.filename,
        doc.extracted_partner,
        doc.extracted_text,
        doc.email_subject,
        doc.email_from,
    )
    return any(h and needle in h.lower() for h in haystacks)


class MatchRanker:
    """Ranks candidate documents for a transaction."""

    DEFAULT_LIMIT = 20

    def __init__(
        self,
        scorer: MatchScorer | None = None,
        suggestion_threshold: int = 50,
        default_limit: int = DEFAULT_LIMIT,
        balance_tolerance_minor: int = 100,
    ) -> None:
        """Initialize the ranker.

        Args:
            scorer: Scorer to use (defaults to standard thresholds).
            suggestion_threshold: Minimum score included in results.
            default_limit: Result count when the caller passes no limit.
            balance_tolerance_minor: Residual treated as balanced.
        """
        self.scorer = scorer or MatchScorer()
        self.suggestion_threshold = suggestion_threshold
        self.default_limit = default_limit
        self.balance_tolerance_minor = balance_tolerance_minor

    def rank(
        self,
        txn: Transaction,
        candidates: Iterable[CandidateDocument],
        exclude_ids: Iterable[str] | None = None,
        search_query: str | None = None,
        limit: int | None = None,
        partner: Partner | None = None,
        min_score: int | None = None,
    ) -> list[MatchResult]:
        """Rank candidates by descending score.

        Args:
            txn: Transaction to explain.
            candidates: Candidate documents.
            exclude_ids: Extra document ids to skip (connected and rejected
                documents of the transaction are always skipped).
            search_query: Optional case-insensitive pre-filter on filename,
                partner, text and email subject/sender. Scoring is unaffected.
            limit: Maximum results (default_limit if None).
            partner: The transaction's resolved partner, if any.
            min_score: Override for the suggestion floor.

        Returns:
            MatchResults above the floor, best first.
        """
        excluded = set(txn.connected_document_ids) | set(txn.rejected_document_ids)
        if exclude_ids:
            excluded.update(exclude_ids)
        floor = self.suggestion_threshold if min_score is None else min_score
        query = (search_query or "").strip()

        results: list[MatchResult] = []
        for doc in candidates:
            if doc.is_deleted or doc.key in excluded or txn.id in doc.transaction_ids:
                continue
            if query and not _matches_query(doc, query):
                continue
            result = self.scorer.score(txn, doc, partner)
            if result.score >= floor:
                results.append(result)

        results.sort(key=lambda r: r.score, reverse=True)
        limit = self.default_limit if limit is None else limit
        logger.debug(
            f"Ranked {len(results)} candidates for transaction {txn.id} (limit={limit})"
        )
        return results[:limit]

    def aggregate_connected(
        self,
        txn: Transaction,
        documents: Iterable[CandidateDocument],
    ) -> ConnectedAmountSummary:
        """Sum connected document amounts in the transaction currency.

        Foreign-currency amounts are converted with the rate of the
        transaction's month. Read-only; not used for matching decisions.
        """
        connected_ids = set(txn.connected_document_ids)
        connected = [d for d in documents if d.id in connected_ids]
        total = 0
        unconverted: list[str] = []

        for doc in connected:
            if doc.extracted_amount is None:
                unconverted.append(doc.key)
                continue
            amount = abs(doc.extracted_amount)
            doc_currency = doc.extracted_currency or txn.currency
            converted = convert_amount(amount, doc_currency, txn.currency, txn.date)
            if converted is None:
                logger.warning(
                    f"Cannot convert {doc_currency} to {txn.currency} for document {doc.key}"
                )
                unconverted.append(doc.key)
                continue
            total += converted.amount

        open_amount = abs(txn.amount) - total
        return ConnectedAmountSummary(
            transaction_id=txn.id,
            currency=txn.currency,
            transaction_amount=abs(txn.amount),
            connected_total=total,
            open_amount=open_amount,
            is_balanced=abs(open_amount) <= self.balance_tolerance_minor,
            document_count=len(connected),
            unconverted_document_ids=unconverted,
        )
