"""
CLI main entry point.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..csv_interpreter import interpret
from ..processing import HttpFormChannel, TransactionProcessor
from ..schemas.dedupe import compute_file_hash
from ..state_store import ProcessingStatus, QueueStore, StateStore

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
        prog="tax-form-importer",
        description="Import 1099-B transactions from brokerage CSV exports into a tax form",
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

    # parse command
    parse_parser = subparsers.add_parser("parse", help="Interpret a CSV file without queueing")
    parse_parser.add_argument("file", type=Path, help="CSV file to interpret")

    # import command
    import_parser = subparsers.add_parser("import", help="Interpret a CSV file and queue it")
    import_parser.add_argument("file", type=Path, help="CSV file to import")
    import_parser.add_argument(
        "--process",
        action="store_true",
        help="Submit the queue right after importing",
    )

    # process command
    subparsers.add_parser("process", help="Submit queued transactions to the form")

    # status command
    subparsers.add_parser("status", help="Show queue status and import history")

    # clear command
    subparsers.add_parser("clear", help="Drop the queue and failed transactions")

    # remove command
    remove_parser = subparsers.add_parser("remove", help="Remove one queued transaction")
    remove_parser.add_argument("transaction_id", type=str, help="Transaction ID")

    # retry-failed command
    subparsers.add_parser("retry-failed", help="Move failed transactions back to the queue")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    return parser


def _open_queue(config: Config) -> QueueStore:
    store = QueueStore(
        StateStore(config.state_db_path),
        lock_timeout_seconds=config.queue.lock_timeout_seconds,
    )
    store.check_integrity()
    return store


def _read_csv(path: Path) -> bytes | None:
    if not path.exists():
        print(f"❌ File not found: {path}")
        return None
    return path.read_bytes()


def cmd_parse(config: Config, path: Path) -> int:
    """Interpret a CSV file and print what would be queued."""
    raw = _read_csv(path)
    if raw is None:
        return 1

    print(f"🔍 Interpreting {path.name}...")
    result = interpret(raw.decode("utf-8", errors="replace"), config.csv)

    for record in result.records:
        print(f"  📄 {record.description}")
        print(f"     → Sold: {record.sale_date}  Acquired: {record.date_acquired or '-'}")
        print(f"     → Proceeds: {record.sales_price}  Cost: {record.cost_basis}")
        print(f"     → {record.term.value} / {record.transaction_type.value}")

    for error in result.processing_errors:
        print(f"  ⚠ {error}")

    print(f"\n✓ Found {result.total_processed} transaction(s) (layout: {result.layout or 'none'})")
    return 0 if result.records else 1


async def _drain(config: Config, store: QueueStore) -> int:
    channel = HttpFormChannel(
        submit_url=config.form.submit_url or "",
        token=config.form.token,
        payor_id=config.form.payor_id,
        timeout=config.form.timeout_seconds,
    )
    processor = TransactionProcessor(store, channel, config.queue)
    try:
        dropped = processor.recover_interrupted()
        if dropped:
            print(f"  ⏭ {dropped} was mid-submission, treated as submitted")
        await processor.start_processing()
    finally:
        await channel.aclose()

    status = store.get_processing_status()
    print(f"\n✓ Remaining: {status['queue_length']}, Failed: {len(status['failed_transactions'])}")
    return 1 if status["failed_transactions"] else 0


def cmd_process(config: Config) -> int:
    """Submit everything in the queue."""
    try:
        config.require_valid(require_form=True)
    except ConfigValidationError as e:
        print(f"❌ Invalid config: {e}")
        return 1

    print(f"📤 Submitting queued transactions to {config.form.submit_url}")
    return asyncio.run(_drain(config, _open_queue(config)))


def cmd_import(config: Config, path: Path, process: bool = False) -> int:
    """Interpret a CSV file and append its records to the queue."""
    raw = _read_csv(path)
    if raw is None:
        return 1

    store = _open_queue(config)
    file_hash = compute_file_hash(raw)
    if any(entry.file_hash == file_hash for entry in store.get_import_history(limit=1000)):
        print(f"  ⏭ {path.name} was imported before, duplicates will be skipped")

    result = interpret(raw.decode("utf-8", errors="replace"), config.csv)
    for error in result.processing_errors:
        print(f"  ⚠ {error}")

    if not result.records:
        print("❌ No transactions found in CSV")
        return 1

    added = store.append_transactions(result.records, status=ProcessingStatus.PROCESSING)
    if added < 0:
        print("❌ Failed to write the queue")
        return 1

    store.record_import(path.name, file_hash, result.total_processed, added)
    print(f"\n✓ Queued: {added}, Duplicates skipped: {result.total_processed - added}")

    if process:
        return cmd_process(config)
    return 0


def cmd_status(config: Config) -> int:
    """Show queue status."""
    store = _open_queue(config)
    status = store.get_processing_status()
    flags = store.get_page_flags()

    print("\n📊 Queue Status")
    print("=" * 40)
    print(f"  Status:                 {status['status'].value}")
    print(f"  Queued:                 {status['queue_length']}")
    print(f"  Failed:                 {len(status['failed_transactions'])}")
    if flags.currently_processing:
        print(f"  In flight:              {flags.current_transaction}")

    for record in status["failed_transactions"]:
        print(f"   - [{record.id}] {record.description} ({record.sale_date})")

    history = store.get_import_history(limit=5)
    if history:
        print("\n📥 Recent Imports")
        print("=" * 40)
        for entry in history:
            print(
                f"  {entry.imported_at}  {entry.source_name}: "
                f"{entry.record_count} rows, {entry.new_count} new"
            )
    print()

    return 0


def cmd_clear(config: Config) -> int:
    """Reset the queue."""
    _open_queue(config).clear_state()
    print("✓ Queue cleared")
    return 0


def cmd_remove(config: Config, transaction_id: str) -> int:
    """Remove one queued transaction."""
    if _open_queue(config).remove_by_id(transaction_id):
        print(f"✓ Removed {transaction_id}")
        return 0
    print(f"❌ Transaction {transaction_id} is not queued")
    return 1


def cmd_retry_failed(config: Config) -> int:
    """Requeue failed transactions."""
    moved = _open_queue(config).requeue_failed()
    print(f"✓ Requeued {moved} failed transaction(s)")
    return 0


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote {config_path}")
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

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    try:
        config.require_valid()
    except ConfigValidationError as e:
        print(f"❌ Invalid config: {e}")
        return 1

    # Route to command
    if parsed.command == "parse":
        return cmd_parse(config, parsed.file)
    elif parsed.command == "import":
        return cmd_import(config, parsed.file, parsed.process)
    elif parsed.command == "process":
        return cmd_process(config)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "clear":
        return cmd_clear(config)
    elif parsed.command == "remove":
        return cmd_remove(config, parsed.transaction_id)
    elif parsed.command == "retry-failed":
        return cmd_retry_failed(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
