"""
Search Strategy Pipeline.

Runs an ordered list of strategies against one transaction and connects
every candidate document whose score clears the auto-connect threshold.

Strategies are data: a {name, supplier, cost_class} record. A supplier
returns scored candidates; connecting, counting, progress and early exit
are pipeline policy and do not depend on any single strategy.

Job state: pending -> processing(strategy 0..N-1) -> completed | failed
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from receipt_reconciler.mailbox_client import MailboxAuthError, MailboxMessage
from receipt_reconciler.matching import MatchRanker, MatchResult, MatchScorer
from receipt_reconciler.matching.scorer import amount_variants, normalize_name
from receipt_reconciler.schemas.models import (
    CandidateDocument,
    JobScope,
    Partner,
    SearchJob,
    Source,
    Transaction,
)
from receipt_reconciler.services.attachments import (
    EMAIL_BODY_ATTACHMENT_ID,
    AttachmentFetcher,
    candidate_from_message,
    receipt_attachments,
)
from receipt_reconciler.services.email_classification import classify_email
from receipt_reconciler.services.exceptions import (
    ERROR_ALL_STRATEGIES_FAILED,
    ERROR_REAUTH_REQUIRED,
    ERROR_TIMEOUT,
    InvalidSearchRequest,
    JobTimeout,
    ReauthRequired,
)
from receipt_reconciler.services.source_lifecycle import SourceLifecycleManager

if TYPE_CHECKING:
    from receipt_reconciler.config import Config
    from receipt_reconciler.mailbox_client import MailboxClient
    from receipt_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

COST_LOCAL = "local"
COST_REMOTE = "remote"

STRATEGY_PARTNER_FILES = "partner_files"
STRATEGY_AMOUNT_FILES = "amount_files"
STRATEGY_EMAIL_ATTACHMENT = "email_attachment"
STRATEGY_EMAIL_INVOICE = "email_invoice"

DEFAULT_STRATEGIES = [
    STRATEGY_PARTNER_FILES,
    STRATEGY_AMOUNT_FILES,
    STRATEGY_EMAIL_ATTACHMENT,
    STRATEGY_EMAIL_INVOICE,
]

# Only the best few amount matches are considered per job
AMOUNT_FILES_TOP_N = 3


class Deadline:
    """Execution ceiling of one job, checked between units of work."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    def check(self) -> None:
        """Raise JobTimeout once the ceiling is exceeded."""
        if self.elapsed > self.seconds:
            raise JobTimeout(f"Job exceeded {self.seconds:.0f}s execution ceiling")


@dataclass
class ScoredCandidate:
    """A candidate with its score and, for mailbox candidates, its origin."""

    document: CandidateDocument
    result: MatchResult
    source: Source | None = None
    message: MailboxMessage | None = None


@dataclass
class SearchContext:
    """Mutable state shared by the strategies of one job run."""

    job: SearchJob
    transaction: Transaction
    partner: Partner | None
    deadline: Deadline
    files_connected: int = 0
    great_matches: int = 0
    emails_processed: int = 0
    attachments_skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def counters(self) -> dict:
        return {
            "files_connected": self.files_connected,
            "emails_processed": self.emails_processed,
            "attachments_skipped": self.attachments_skipped,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class Strategy:
    """One named search technique."""

    name: str
    supplier: Callable[[SearchContext], list[ScoredCandidate]]
    cost_class: str = COST_LOCAL


@dataclass
class PipelineResult:
    """Summary of one pipeline run."""

    job_id: int
    success: bool
    files_connected: int = 0
    great_matches: int = 0
    strategies_run: list[str] = field(default_factory=list)
    strategies_skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error_code: str | None = None


def build_search_queries(txn: Transaction, partner: Partner | None, limit: int = 3) -> list[str]:
    """
    Derive free-text mailbox queries from a transaction.

    Most specific first: partner name with amount, partner name alone,
    payment reference.
    """
    names: list[str] = []
    if partner:
        names.append(partner.name)
    if txn.counterparty:
        names.append(txn.counterparty)
    names = [normalize_name(n) for n in names]

    amount = amount_variants(txn.amount)[1] if txn.amount else None

    queries: list[str] = []
    for name in names:
        if not name:
            continue
        if amount:
            queries.append(f"{name} {amount}")
        queries.append(name)
    if txn.reference:
        queries.append(txn.reference.strip())

    unique: list[str] = []
    for q in queries:
        if q and q not in unique:
            unique.append(q)
    return unique[:limit]


class SearchPipeline:
    """
    Runs search strategies for single-transaction jobs.

    Local strategies rank existing documents; remote strategies score
    mailbox candidates before download and only download what will be
    connected. Strategy order is cheap before expensive, and the run stops
    once enough great matches are connected.
    """

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        mailbox_client: MailboxClient | None = None,
        ranker: MatchRanker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pipeline.

        Args:
            state_store: Store for documents, jobs and sources
            config: Application configuration
            mailbox_client: Mailbox handle (remote strategies need one)
            ranker: Ranker override
            clock: Monotonic clock used for the execution ceiling
        """
        self.store = state_store
        self.config = config
        self.client = mailbox_client
        self.clock = clock

        matching = config.matching
        self.ranker = ranker or MatchRanker(
            scorer=MatchScorer(
                max_score=matching.max_score,
                strong_threshold=matching.strong_label_threshold,
                likely_threshold=matching.likely_label_threshold,
            ),
            suggestion_threshold=matching.suggestion_threshold,
            default_limit=matching.max_results,
            balance_tolerance_minor=matching.balance_tolerance_minor,
        )
        self.fetcher = (
            AttachmentFetcher(state_store, mailbox_client, config.documents_dir)
            if mailbox_client
            else None
        )
        self.lifecycle = SourceLifecycleManager(state_store, config)

        self.strategies: dict[str, Strategy] = {}
        for strategy in (
            Strategy(STRATEGY_PARTNER_FILES, self._supply_partner_files, COST_LOCAL),
            Strategy(STRATEGY_AMOUNT_FILES, self._supply_amount_files, COST_LOCAL),
            Strategy(STRATEGY_EMAIL_ATTACHMENT, self._supply_email_attachments, COST_REMOTE),
            Strategy(STRATEGY_EMAIL_INVOICE, self._supply_email_invoices, COST_REMOTE),
        ):
            self.register_strategy(strategy)

    def register_strategy(self, strategy: Strategy) -> None:
        """Add or replace a strategy by name."""
        self.strategies[strategy.name] = strategy

    def run(self, job: SearchJob) -> PipelineResult:
        """
        Execute a claimed (processing) single-transaction job.

        Per-strategy errors are recorded and the next strategy runs. The
        job fails only if every strategy failed, on a credential error,
        or when the execution ceiling is exceeded.
        """
        if job.scope != JobScope.SINGLE_TRANSACTION or job.id is None:
            raise InvalidSearchRequest(f"Pipeline cannot run {job.scope.value} job #{job.id}")

        result = PipelineResult(job_id=job.id, success=False)
        txn = self.store.get_transaction(job.transaction_id) if job.transaction_id else None
        if txn is None:
            error = f"Transaction {job.transaction_id} not found"
            self.store.fail_search_job(job.id, error, InvalidSearchRequest.code)
            result.errors.append(error)
            result.error_code = InvalidSearchRequest.code
            return result

        partner = self.store.get_partner(txn.partner_id) if txn.partner_id else None
        names = job.strategies or list(self.config.search.default_strategies)
        ctx = SearchContext(
            job=job,
            transaction=txn,
            partner=partner,
            deadline=Deadline(self.config.search.job_timeout_seconds, self.clock),
            errors=list(job.errors),
        )
        great_count = self.config.search.great_match_count
        failures = 0

        logger.info(f"Search job #{job.id}: transaction {txn.id}, strategies {names}")

        for index, name in enumerate(names):
            if ctx.great_matches >= great_count:
                result.strategies_skipped = names[index:]
                logger.info(
                    f"Search job #{job.id}: {ctx.great_matches} great matches, "
                    f"skipping {result.strategies_skipped}"
                )
                break

            self.store.update_search_job(job.id, current_strategy_index=index)
            strategy = self.strategies.get(name)

            try:
                ctx.deadline.check()
                if strategy is None:
                    raise InvalidSearchRequest(f"Unknown strategy '{name}'")
                candidates = strategy.supplier(ctx)
                self._connect_candidates(ctx, candidates)
            except ReauthRequired as e:
                self.lifecycle.mark_needs_reauth(e.source_id, str(e))
                return self._fail(ctx, result, f"{name}: {e}", ERROR_REAUTH_REQUIRED)
            except JobTimeout as e:
                return self._fail(ctx, result, f"{name}: {e}", ERROR_TIMEOUT)
            except Exception as e:
                logger.warning(f"Search job #{job.id}: strategy {name} failed: {e}")
                ctx.errors.append(f"{name}: {e}")
                failures += 1

            result.strategies_run.append(name)
            self.store.update_search_job(
                job.id,
                progress=int((index + 1) * 100 / len(names)),
                **ctx.counters(),
            )

        result.files_connected = ctx.files_connected
        result.great_matches = ctx.great_matches
        result.errors = list(ctx.errors)

        if result.strategies_run and failures == len(result.strategies_run):
            return self._fail(ctx, result, "All strategies failed", ERROR_ALL_STRATEGIES_FAILED)

        self.store.complete_search_job(job.id, progress=100, **ctx.counters())
        result.success = True
        logger.info(
            f"Search job #{job.id} completed: {ctx.files_connected} connected, "
            f"{len(ctx.errors)} errors"
        )
        return result

    def _fail(
        self, ctx: SearchContext, result: PipelineResult, error: str, code: str
    ) -> PipelineResult:
        logger.error(f"Search job #{ctx.job.id} failed ({code}): {error}")
        counters = ctx.counters()
        self.store.fail_search_job(ctx.job.id, error, code, **counters)
        result.success = False
        result.error_code = code
        result.files_connected = ctx.files_connected
        result.great_matches = ctx.great_matches
        result.errors = [*ctx.errors, error]
        return result

    def _connect_candidates(self, ctx: SearchContext, candidates: list[ScoredCandidate]) -> None:
        """Connect candidates at or above the auto-connect threshold, best first."""
        txn = ctx.transaction
        threshold = self.config.matching.auto_connect_threshold
        great_threshold = self.config.search.great_match_threshold
        great_count = self.config.search.great_match_count

        for candidate in sorted(candidates, key=lambda c: c.result.score, reverse=True):
            score = candidate.result.score
            if score < threshold or ctx.great_matches >= great_count:
                break
            ctx.deadline.check()

            document = candidate.document
            if document.id is None:
                document = self._download(ctx, candidate)
                if document is None:
                    continue
            if document.id in txn.rejected_document_ids:
                continue

            if self.store.connect_document(document.id, txn.id, score):
                ctx.files_connected += 1
                if score >= great_threshold:
                    ctx.great_matches += 1
                txn.connected_document_ids.append(document.id)
                logger.info(
                    f"Search job #{ctx.job.id}: connected document {document.id} "
                    f"to transaction {txn.id} (score {score})"
                )
                if ctx.partner and document.source_id is not None:
                    self.store.add_partner_pattern_source(ctx.partner.id, document.source_id)

    def _download(self, ctx: SearchContext, candidate: ScoredCandidate) -> CandidateDocument | None:
        if self.fetcher is None or candidate.source is None or candidate.message is None:
            return None

        doc = candidate.document
        partner_id = ctx.transaction.partner_id
        try:
            if doc.attachment_id == EMAIL_BODY_ATTACHMENT_ID:
                outcome = self.fetcher.store_email_body(candidate.source, candidate.message, partner_id)
            else:
                attachment = next(
                    a for a in candidate.message.attachments if a.id == doc.attachment_id
                )
                outcome = self.fetcher.fetch_attachment(
                    candidate.source, candidate.message, attachment, partner_id
                )
        except MailboxAuthError as e:
            raise ReauthRequired(candidate.source.id, f"Mailbox credential rejected: {e}") from e

        if outcome.document is None:
            ctx.attachments_skipped += 1
        return outcome.document

    # Strategy suppliers

    def _rank(self, ctx: SearchContext, documents: list[CandidateDocument]) -> list[ScoredCandidate]:
        by_key = {d.key: d for d in documents}
        results = self.ranker.rank(
            ctx.transaction,
            documents,
            partner=ctx.partner,
            limit=len(documents),
        )
        return [ScoredCandidate(by_key[r.document_id], r) for r in results]

    def _supply_partner_files(self, ctx: SearchContext) -> list[ScoredCandidate]:
        """Unconnected local documents of the transaction's partner."""
        txn = ctx.transaction
        if not txn.partner_id:
            logger.debug(f"Transaction {txn.id} has no partner, skipping partner files")
            return []
        documents = self.store.list_documents(partner_id=txn.partner_id, unconnected_only=True)
        return self._rank(ctx, documents)

    def _supply_amount_files(self, ctx: SearchContext) -> list[ScoredCandidate]:
        """Unconnected local documents dated near the transaction, best few."""
        txn = ctx.transaction
        window = timedelta(days=self.config.search.local_date_window_days)
        documents = [
            d
            for d in self.store.list_documents(
                unconnected_only=True,
                date_from=txn.date - window,
                date_to=txn.date + window,
            )
            if d.extracted_amount is not None
        ]
        return self._rank(ctx, documents)[:AMOUNT_FILES_TOP_N]

    def _mailbox_messages(
        self, ctx: SearchContext, source: Source, with_attachments: bool
    ) -> list[MailboxMessage]:
        """Search one source with the transaction's queries inside the date window."""
        if self.client is None:
            return []
        txn = ctx.transaction
        queries = build_search_queries(txn, ctx.partner, self.config.search.max_queries)
        if not queries:
            return []

        window = timedelta(days=self.config.search.email_date_window_days)
        date_from, date_to = txn.date - window, txn.date + window
        account = source.external_account_id

        try:
            if with_attachments:
                messages = self.client.search_attachments(account, queries, date_from, date_to)
            else:
                messages = []
                seen: set[str] = set()
                for query in queries:
                    for message_id in self.client.search_messages(account, query, date_from, date_to):
                        if message_id in seen:
                            continue
                        seen.add(message_id)
                        ctx.deadline.check()
                        messages.append(self.client.fetch_message(account, message_id))
        except MailboxAuthError as e:
            raise ReauthRequired(source.id, f"Mailbox credential rejected: {e}") from e

        # The mailbox date filter is advisory; enforce the window here
        return [
            m for m in messages if m.date is None or date_from <= m.date.date() <= date_to
        ]

    def _remote_sources(self) -> list[Source]:
        if self.client is None:
            return []
        return [s for s in self.store.list_sources(active_only=True) if s.is_usable]

    def _supply_email_attachments(self, ctx: SearchContext) -> list[ScoredCandidate]:
        """Score mailbox attachments without downloading them."""
        txn = ctx.transaction
        scored: list[ScoredCandidate] = []
        scorer = self.ranker.scorer

        for source in self._remote_sources():
            for message in self._mailbox_messages(ctx, source, with_attachments=True):
                ctx.deadline.check()
                ctx.emails_processed += 1
                classification = classify_email(message)
                if classification.possible_mail_invoice:
                    # Body is the invoice; left to the email_invoice strategy
                    continue

                for attachment in receipt_attachments(message):
                    existing = self.store.find_document_by_attachment(message.id, attachment.id)
                    if existing and (
                        existing.is_deleted
                        or txn.id in existing.transaction_ids
                        or existing.id in txn.rejected_document_ids
                    ):
                        ctx.attachments_skipped += 1
                        continue

                    document = existing or candidate_from_message(source, message, attachment)
                    scored.append(
                        ScoredCandidate(
                            document=document,
                            result=scorer.score(txn, document, ctx.partner),
                            source=source,
                            message=message,
                        )
                    )

                ctx.attachments_skipped += len(message.attachments) - len(
                    receipt_attachments(message)
                )

        return scored

    def _supply_email_invoices(self, ctx: SearchContext) -> list[ScoredCandidate]:
        """Score whole emails that read like invoices and carry no PDF."""
        txn = ctx.transaction
        scored: list[ScoredCandidate] = []
        scorer = self.ranker.scorer

        for source in self._remote_sources():
            for message in self._mailbox_messages(ctx, source, with_attachments=False):
                ctx.deadline.check()
                classification = classify_email(message)
                if classification.has_pdf_attachment:
                    continue
                if not (classification.possible_mail_invoice or classification.possible_invoice_link):
                    continue
                ctx.emails_processed += 1

                existing = self.store.find_document_by_attachment(message.id, EMAIL_BODY_ATTACHMENT_ID)
                if existing and (existing.is_deleted or txn.id in existing.transaction_ids):
                    continue
                document = existing or candidate_from_message(source, message)
                scored.append(
                    ScoredCandidate(
                        document=document,
                        result=scorer.score(txn, document, ctx.partner),
                        source=source,
                        message=message,
                    )
                )

        return scored
