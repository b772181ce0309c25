"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..mailbox_client import MailboxClient
from ..matching import MatchRanker, MatchScorer
from ..schemas.models import CandidateDocument, Partner, Transaction
from ..services import (
    JobWorker,
    MailboxSyncProcessor,
    ReconcilerError,
    SearchJobQueueService,
    SearchPipeline,
    SourceLifecycleManager,
    SyncScheduler,
)
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-reconciler",
        description="Reconcile bank transactions with receipts from local files and mailboxes",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # import command
    import_parser = subparsers.add_parser(
        "import", help="Load transactions, partners and documents from a YAML snapshot"
    )
    import_parser.add_argument("file", type=Path, help="YAML snapshot file")

    # score command
    score_parser = subparsers.add_parser("score", help="Rank documents for a transaction")
    score_parser.add_argument("transaction_id", type=str, help="Transaction ID")
    score_parser.add_argument("--query", type=str, help="Filter documents by text")
    score_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum suggestions (default: matching.max_results)",
    )
    score_parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )

    # search command
    search_parser = subparsers.add_parser(
        "search", help="Queue a document search for a transaction"
    )
    search_parser.add_argument("transaction_id", type=str, help="Transaction ID")
    search_parser.add_argument(
        "--strategy",
        action="append",
        dest="strategies",
        help="Strategy to run (repeatable, default: search.default_strategies)",
    )
    search_parser.add_argument(
        "--run",
        action="store_true",
        help="Process the queue right away",
    )

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Queue mailbox sync jobs for uncovered dates")
    sync_parser.add_argument("--source", type=int, help="Source ID (default: all active sources)")
    sync_parser.add_argument(
        "--run",
        action="store_true",
        help="Process the queue right away",
    )

    # work command
    work_parser = subparsers.add_parser("work", help="Process pending jobs")
    work_parser.add_argument(
        "--batch-size",
        type=int,
        default=10,
        help="Maximum jobs to process (default: 10)",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show queue and store statistics")
    status_parser.add_argument("--job", type=int, help="Show the poll view of one job")

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Fail stale jobs and remove old ones")
    sweep_parser.add_argument(
        "--cleanup-days",
        type=int,
        default=30,
        help="Remove finished jobs older than this (default: 30)",
    )

    # connect command
    connect_parser = subparsers.add_parser("connect", help="Connect a mailbox account")
    connect_parser.add_argument("account_id", type=str, help="External account ID")
    connect_parser.add_argument("--email", type=str, help="Mailbox address")
    connect_parser.add_argument("--credential", type=str, help="Account credential")

    # disconnect command
    disconnect_parser = subparsers.add_parser("disconnect", help="Disconnect a mailbox source")
    disconnect_parser.add_argument("source_id", type=int, help="Source ID")

    # reconnect command
    reconnect_parser = subparsers.add_parser(
        "reconnect", help="Reconnect a disconnected mailbox account"
    )
    reconnect_parser.add_argument("account_id", type=str, help="External account ID")
    reconnect_parser.add_argument("--credential", type=str, help="Account credential")

    return parser


def _mailbox_client(config: Config) -> MailboxClient | None:
    if not config.mailbox.token:
        logger.debug("No mailbox token configured, remote strategies disabled")
        return None
    return MailboxClient.from_config(config.mailbox)


def _worker(config: Config, store: StateStore) -> JobWorker:
    client = _mailbox_client(config)
    queue = SearchJobQueueService(store, config)
    pipeline = SearchPipeline(store, config, mailbox_client=client)
    sync_processor = MailboxSyncProcessor(store, config, client) if client else None
    return JobWorker(queue, pipeline, sync_processor)


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ Config file already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_import(config: Config, file: Path) -> int:
    """Load a YAML snapshot into the state store."""
    if not file.exists():
        print(f"❌ File not found: {file}")
        return 1

    with open(file) as f:
        data = yaml.safe_load(f) or {}

    store = StateStore(config.state_db_path)

    partners = [Partner.from_dict(p) for p in data.get("partners", [])]
    for partner in partners:
        store.upsert_partner(partner)

    transactions = [Transaction.from_dict(t) for t in data.get("transactions", [])]
    for txn in transactions:
        store.upsert_transaction(txn)

    created = 0
    for raw in data.get("documents", []):
        doc = CandidateDocument.from_dict(raw)
        if doc.id and store.get_document(doc.id, include_deleted=True):
            continue
        store.create_document(doc)
        created += 1

    print(
        f"✓ Imported {len(transactions)} transactions, {len(partners)} partners, "
        f"{created} documents"
    )
    return 0


def cmd_score(
    config: Config,
    transaction_id: str,
    query: str | None = None,
    limit: int | None = None,
    as_json: bool = False,
) -> int:
    """Rank stored documents for one transaction."""
    store = StateStore(config.state_db_path)
    txn = store.get_transaction(transaction_id)
    if not txn:
        print(f"❌ Transaction {transaction_id} not found")
        return 1

    partner = store.get_partner(txn.partner_id) if txn.partner_id else None
    matching = config.matching
    ranker = MatchRanker(
        scorer=MatchScorer(
            max_score=matching.max_score,
            strong_threshold=matching.strong_label_threshold,
            likely_threshold=matching.likely_label_threshold,
        ),
        suggestion_threshold=matching.suggestion_threshold,
        default_limit=matching.max_results,
        balance_tolerance_minor=matching.balance_tolerance_minor,
    )
    results = ranker.rank(txn, store.list_documents(), search_query=query, limit=limit, partner=partner)

    connected = [d for d in (store.get_document(i) for i in txn.connected_document_ids) if d]
    summary = ranker.aggregate_connected(txn, connected)

    if as_json:
        print(
            json.dumps(
                {
                    "results": [r.to_dict() for r in results],
                    "connected": summary.to_dict(),
                },
                indent=2,
            )
        )
        return 0

    print(f"📊 Transaction {txn.id}: {txn.date} {txn.amount / 100:.2f} {txn.currency}")
    if not results:
        print("   No suggestions above the threshold")
    for result in results:
        label = f" [{result.label}]" if result.label else ""
        print(f"   {result.score:3d}{label}  {result.document_id}")
        for reason in result.reasons:
            print(f"         - {reason}")

    balance = "✓ balanced" if summary.is_balanced else f"open {summary.open_amount / 100:.2f}"
    print(f"   Connected: {summary.document_count} documents ({balance})")
    return 0


def cmd_search(
    config: Config,
    transaction_id: str,
    strategies: list[str] | None = None,
    run: bool = False,
) -> int:
    """Queue a single-transaction search."""
    store = StateStore(config.state_db_path)
    queue = SearchJobQueueService(store, config)

    try:
        job = queue.enqueue_transaction_search(transaction_id, strategies)
    except ReconcilerError as e:
        print(f"❌ {e}")
        return 1

    if job is None:
        print(f"⚠️  A search for transaction {transaction_id} is already queued")
        return 0

    print(f"✓ Queued search job #{job.id} ({', '.join(job.strategies)})")
    if run:
        _worker(config, store).run_pending()
        print(json.dumps(queue.get_status(job.id), indent=2))
    return 0


def cmd_sync(config: Config, source_id: int | None = None, run: bool = False) -> int:
    """Queue sync jobs for the gaps of one or all sources."""
    store = StateStore(config.state_db_path)
    queue = SearchJobQueueService(store, config)
    scheduler = SyncScheduler(store, config, queue)

    if source_id is None:
        results = scheduler.trigger_all()
    else:
        try:
            results = [scheduler.trigger_sync(source_id, manual=True)]
        except ReconcilerError as e:
            print(f"❌ {e.code}: {e}")
            return 1

    for result in results:
        if result.error_code:
            print(f"⚠️  Source {result.source_id}: {result.message} ({result.error_code})")
            continue
        print(f"📊 Source {result.source_id}: {result.message}")
        for job in result.jobs:
            print(f"   ✓ Job #{job.id}: {job.date_from} to {job.date_to}")

    if run:
        stats = _worker(config, store).run_pending()
        print(f"✓ Processed {stats.processed} jobs ({stats.failed} failed)")
    return 0


def cmd_work(config: Config, batch_size: int) -> int:
    """Process pending jobs."""
    store = StateStore(config.state_db_path)
    stats = _worker(config, store).run_pending(batch_size)

    print("📊 Worker run:")
    print(f"   Stale jobs failed: {stats.stale}")
    print(f"   Processed:         {stats.processed}")
    print(f"   Succeeded:         {stats.succeeded}")
    print(f"   Failed:            {stats.failed}")
    return 0 if stats.failed == 0 else 1


def cmd_status(config: Config, job_id: int | None = None) -> int:
    """Show status."""
    store = StateStore(config.state_db_path)

    if job_id is not None:
        view = SearchJobQueueService(store, config).get_status(job_id)
        if view is None:
            print(f"❌ Job #{job_id} not found")
            return 1
        print(json.dumps(view, indent=2))
        return 0

    stats = store.get_stats()
    print("📊 Reconciler Status")
    print("=" * 40)
    print(f"Transactions:       {stats['transactions']}")
    print(f"Documents:          {stats['documents']} ({stats['documents_deleted']} deleted)")
    print(f"Connections:        {stats['connections']}")
    print(f"Sources:            {stats['sources']}")
    print("Jobs:")
    for status, count in stats["jobs"].items():
        print(f"  {status:<16}  {count}")

    for source in store.list_sources():
        print(
            f"Source {source.id} ({source.external_account_id}): {source.state.value}, "
            f"synced {source.synced_date_from or '-'} to {source.synced_date_to or '-'}"
        )
    return 0


def cmd_sweep(config: Config, cleanup_days: int) -> int:
    """Fail stale jobs and remove old finished ones."""
    store = StateStore(config.state_db_path)
    queue = SearchJobQueueService(store, config)

    swept = queue.sweep_stale()
    removed = queue.cleanup_old_jobs(cleanup_days)
    print(f"✓ Failed {len(swept)} stale jobs, removed {removed} old jobs")
    return 0


def cmd_connect(
    config: Config, account_id: str, email: str | None = None, credential: str | None = None
) -> int:
    """Connect (or reconnect) a mailbox account."""
    store = StateStore(config.state_db_path)
    manager = SourceLifecycleManager(store, config)
    result = manager.connect(account_id, email=email, credential=credential)

    action = "Created" if result.created else "Connected"
    print(f"✓ {action} source {result.source.id} ({account_id})")
    if result.documents_restored:
        print(f"   Restored {result.documents_restored} documents")
    return 0


def cmd_disconnect(config: Config, source_id: int) -> int:
    """Disconnect a mailbox source."""
    store = StateStore(config.state_db_path)
    manager = SourceLifecycleManager(store, config, _mailbox_client(config))

    try:
        result = manager.disconnect(source_id)
    except ReconcilerError as e:
        print(f"❌ {e}")
        return 1

    if not result.credential_revoked:
        print("⚠️  Credential could not be revoked remotely")
    print(f"✓ Disconnected source {source_id}")
    print(f"   Jobs removed:           {result.jobs_removed}")
    print(f"   Documents soft-deleted: {result.documents_soft_deleted}")
    print(f"   Partners updated:       {result.partners_updated}")
    return 0


def cmd_reconnect(config: Config, account_id: str, credential: str | None = None) -> int:
    """Reconnect a disconnected mailbox account."""
    store = StateStore(config.state_db_path)
    manager = SourceLifecycleManager(store, config)

    try:
        result = manager.reconnect(account_id, credential)
    except ReconcilerError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Reconnected source {result.source.id}, restored {result.documents_restored} documents")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    try:
        config = load_config(parsed.config)
    except ConfigValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        return 1

    if parsed.command == "import":
        return cmd_import(config, parsed.file)
    elif parsed.command == "score":
        return cmd_score(config, parsed.transaction_id, parsed.query, parsed.limit, parsed.json)
    elif parsed.command == "search":
        return cmd_search(config, parsed.transaction_id, parsed.strategies, parsed.run)
    elif parsed.command == "sync":
        return cmd_sync(config, parsed.source, parsed.run)
    elif parsed.command == "work":
        return cmd_work(config, parsed.batch_size)
    elif parsed.command == "status":
        return cmd_status(config, parsed.job)
    elif parsed.command == "sweep":
        return cmd_sweep(config, parsed.cleanup_days)
    elif parsed.command == "connect":
        return cmd_connect(config, parsed.account_id, parsed.email, parsed.credential)
    elif parsed.command == "disconnect":
        return cmd_disconnect(config, parsed.source_id)
    elif parsed.command == "reconnect":
        return cmd_reconnect(config, parsed.account_id, parsed.credential)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
