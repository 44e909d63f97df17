#!/usr/bin/env python3
"""
Bubble.io → Postgres mirror (agents, users, customers, invoices, items, SEDA,
templates, payments) plus attachment migration and link validation.

Features:
- Bearer-key Bubble Data API client with cursor pagination and retries
- Config-driven field mappings (built in, or BBSYNC_CONFIG json)
- Upsert by Bubble id where the newer Modified Date wins
- Relational invoice sync with session progress tracking
- File migration from the Bubble CDN to local storage
- Dangling-reference report / repair

Usage:
  export $(grep -v '^#' .env | xargs)  # or rely on python-dotenv
  python bbsync.py verify
  python bbsync.py init-db
  python bbsync.py sync --since 2025-08-01 --files
  python bbsync.py sync-invoices --from 2025-08-01 --to 2025-08-31
  python bbsync.py sync-invoice 1647839483923x8394832 --force
  python bbsync.py sync-ids changed.csv
  python bbsync.py migrate-files --created-after 2025-08-01 --dry-run
  python bbsync.py validate --fix
"""

import json
import logging
from datetime import datetime

import click
import structlog
from sqlalchemy import text

from bbsync_config import load_config
from bbsync_db import init_db, make_engine
from bbsync_files import get_migration_stats, migrate_all_bubble_files, patch_non_ascii_filenames
from bbsync_http import BubbleApi, fetch_page
from bbsync_mappings import ensure_utc
from bbsync_models import MigrationResult, SyncResults
from bbsync_progress import get_progress, new_session_id
from bbsync_settings import get_settings, missing_required_keys
from bbsync_sync import (
    parse_id_list,
    sync_by_id_list,
    sync_complete_invoice_package,
    sync_invoice_package_with_relations,
    sync_invoice_with_full_integrity,
)
from bbsync_validator import RELATIONSHIPS, validate_and_rebuild_relationships

# Configure structured logging
logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[logging.StreamHandler()])
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger()

DATE = click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"])
FILE_TABLES = ["seda_registration", "user", "payment", "submitted_payment", "invoice_template"]


# Simple console for output
def print_msg(msg):
    print(msg)


def print_error(msg):
    print(f"ERROR: {msg}")


def print_success(msg):
    print(f"SUCCESS: {msg}")


def setup_logging(verbose: bool) -> None:
    root = logging.getLogger()
    if verbose:
        root.setLevel(logging.DEBUG)
    log_file = get_settings().SYNC_LOG_FILE
    if log_file and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(fh)


def ensure_env(*keys: str):
    missing = [k for k in missing_required_keys() if not keys or k in keys]
    if missing:
        raise click.ClickException("Missing required environment variables: " + ", ".join(missing))


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value else None


def _config():
    path = get_settings().CONFIG_PATH
    return load_config(path) if path else load_config()


def _print_sync_summary(results: SyncResults) -> None:
    print_msg("\nSync Summary:")
    for name, c in results.counts.items():
        print_msg(f"  {name}: synced {c.synced}, skipped {c.skipped}, failed {c.failed}")
    print_msg(f"  Errors: {len(results.errors)}")
    for err in results.errors[:20]:
        print_msg(f"    - {err}")
    if len(results.errors) > 20:
        print_msg(f"    ... and {len(results.errors) - 20} more")


def _print_migration_summary(result: MigrationResult, title: str = "File Migration") -> None:
    s = result.summary
    print_msg(f"\n{title} Summary:")
    print_msg(f"  Files: {s.total_files}")
    print_msg(f"  Migrated: {s.migrated}")
    print_msg(f"  Failed: {s.failed}")
    print_msg(f"  Skipped: {s.skipped}")
    print_msg(f"  Bytes: {s.total_size}")
    print_msg(f"  Duration: {s.duration}s")


@click.group()
def cli():
    """Bubble.io → Postgres sync tools."""
    pass


@cli.command()
def verify():
    """Check env, database connectivity and Bubble API access."""
    missing = missing_required_keys()
    if missing:
        print_error("Missing env: " + ", ".join(missing))
        return

    try:
        engine = make_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print_success("Database reachable")
    except Exception as e:
        print_error(f"Database check failed: {e}")
        return

    try:
        api = BubbleApi.from_settings()
        results, remaining = fetch_page(api, "invoice")
        print_success(f"Bubble API reachable ({len(results) + remaining} invoices)")
    except Exception as e:
        print_error(f"Bubble API check failed: {e}")


@cli.command("init-db")
def init_db_cmd():
    """Create local tables if they don't exist."""
    ensure_env("DATABASE_URL")
    init_db(make_engine())
    print_success("Tables created")


@cli.command()
@click.option("--since", type=DATE, help="only records modified on/after (e.g. 2025-08-01)")
@click.option("--until", type=DATE, help="only records modified on/before")
@click.option("--files", "sync_files", is_flag=True, help="migrate attachments afterwards")
@click.option("--verbose", is_flag=True, help="verbose logging")
def sync(since, until, sync_files, verbose):
    """Full package sync of all nine entity types."""
    setup_logging(verbose)
    ensure_env()
    print_msg("Starting full package sync")

    try:
        engine = make_engine()
        init_db(engine)
        results = sync_complete_invoice_package(
            engine,
            BubbleApi.from_settings(),
            since=_utc(since),
            until=_utc(until),
            sync_files=sync_files,
            config=_config(),
        )
    except Exception as e:
        print_error(f"Sync failed: {e}")
        logger.exception("Sync error")
        return

    _print_sync_summary(results)
    if results.files:
        _print_migration_summary(results.files)
    if results.success:
        print_success("Sync completed!")
    else:
        print_msg("Sync completed with errors")


@cli.command("sync-invoices")
@click.option("--from", "date_from", type=DATE, required=True, help="modified on/after")
@click.option("--to", "date_to", type=DATE, help="modified on/before (default: now)")
@click.option("--session", "session_id", help="progress session id (default: generated)")
@click.option("--verbose", is_flag=True, help="verbose logging")
def sync_invoices(date_from, date_to, session_id, verbose):
    """Sync invoices changed in a window, with all of their related records."""
    setup_logging(verbose)
    ensure_env()
    session_id = session_id or new_session_id()
    print_msg(f"Starting invoice sync (session {session_id})")

    try:
        engine = make_engine()
        init_db(engine)
        results = sync_invoice_package_with_relations(
            engine,
            BubbleApi.from_settings(),
            _utc(date_from),
            _utc(date_to),
            session_id=session_id,
            config=_config(),
        )
    except Exception as e:
        print_error(f"Invoice sync failed: {e}")
        logger.exception("Invoice sync error")
        return

    print_msg(f"  Invoices in window: {results.invoices_checked}")
    print_msg(f"  Needing sync: {results.invoices_needing_sync}")
    _print_sync_summary(results)
    if results.success:
        print_success("Invoice sync completed!")


@cli.command("sync-invoice")
@click.argument("invoice_id")
@click.option("--force", is_flag=True, help="sync even if the local copy is up to date")
@click.option("--verbose", is_flag=True, help="verbose logging")
def sync_invoice(invoice_id, force, verbose):
    """Sync one invoice with its agent, customer, payments, items and SEDA."""
    setup_logging(verbose)
    ensure_env()

    try:
        engine = make_engine()
        init_db(engine)
        results = sync_invoice_with_full_integrity(
            engine, BubbleApi.from_settings(), invoice_id, force=force, config=_config()
        )
    except Exception as e:
        print_error(f"Invoice sync failed: {e}")
        logger.exception("Invoice sync error")
        return

    if results.invoices_checked and not results.invoices_needing_sync:
        print_msg(f"Invoice {invoice_id} is up to date (use --force to sync anyway)")
        return
    _print_sync_summary(results)
    if results.success:
        print_success(f"Invoice {invoice_id} synced!")


@cli.command("sync-ids")
@click.argument("id_file", type=click.File("r", encoding="utf-8"))
@click.option("--verbose", is_flag=True, help="verbose logging")
def sync_ids(id_file, verbose):
    """Sync invoices / SEDAs listed as type,id,modified_date (CSV or TSV, - for stdin)."""
    setup_logging(verbose)
    ensure_env()
    rows = parse_id_list(id_file.read())
    print_msg(f"Parsed {len(rows)} ids")
    if not rows:
        return

    try:
        engine = make_engine()
        init_db(engine)
        results = sync_by_id_list(engine, BubbleApi.from_settings(), rows, config=_config())
    except Exception as e:
        print_error(f"Id list sync failed: {e}")
        logger.exception("Id list sync error")
        return

    _print_sync_summary(results)
    if results.success:
        print_success("Id list sync completed!")


@cli.command("migrate-files")
@click.option("--created-after", type=DATE, help="only records created on/after")
@click.option(
    "--table", "tables", multiple=True, type=click.Choice(FILE_TABLES), help="limit to table(s)"
)
@click.option("--dry-run", is_flag=True, help="list planned downloads; don't write")
@click.option("--verbose", is_flag=True, help="verbose logging")
def migrate_files(created_after, tables, dry_run, verbose):
    """Download Bubble-hosted attachments and rewrite their URLs."""
    setup_logging(verbose)
    ensure_env("DATABASE_URL")

    try:
        result = migrate_all_bubble_files(
            make_engine(),
            config=_config(),
            created_after=_utc(created_after),
            tables=list(tables) or None,
            dry_run=dry_run,
        )
    except Exception as e:
        print_error(f"File migration failed: {e}")
        logger.exception("File migration error")
        return

    if dry_run:
        for d in result.details:
            print_msg(f"  {d.table}.{d.field} {d.record_id}: {d.old_url} -> {d.new_url}")
    _print_migration_summary(result)
    if dry_run:
        print_msg("DRY RUN - No files were downloaded")
    elif not result.summary.failed:
        print_success("File migration completed!")


@cli.command("file-stats")
@click.option("--created-after", type=DATE, help="only records created on/after")
def file_stats(created_after):
    """Count external files still waiting for migration."""
    ensure_env("DATABASE_URL")
    stats = get_migration_stats(make_engine(), config=_config(), created_after=_utc(created_after))
    print_msg(f"Pending external files: {stats.total_files}")
    for table, n in sorted(stats.by_table.items()):
        print_msg(f"  {table}: {n}")
    for field, n in sorted(stats.by_field.items()):
        print_msg(f"    {field}: {n}")


@cli.command("patch-filenames")
@click.option("--dry-run", is_flag=True, help="report only")
def patch_filenames(dry_run):
    """Rename migrated files with non-ASCII names and fix their URLs."""
    ensure_env("DATABASE_URL")
    result = patch_non_ascii_filenames(make_engine(), config=_config(), dry_run=dry_run)
    _print_migration_summary(result, "Filename Patch")


@cli.command()
@click.option("--fix", "fix_broken_links", is_flag=True, help="null out dangling references")
@click.option("--validate-only", is_flag=True, help="never write, even with --fix")
@click.option(
    "--table",
    "tables",
    multiple=True,
    type=click.Choice(sorted(RELATIONSHIPS)),
    help="limit to table(s)",
)
@click.option("--json", "as_json", is_flag=True, help="print the full report as JSON")
def validate(fix_broken_links, validate_only, tables, as_json):
    """Report (and optionally repair) dangling Bubble id references."""
    ensure_env("DATABASE_URL")
    report = validate_and_rebuild_relationships(
        make_engine(),
        fix_broken_links=fix_broken_links,
        validate_only=validate_only,
        tables=list(tables) or None,
    )

    if as_json:
        print(json.dumps(report.model_dump(mode="json"), indent=2))
        return

    print_msg(report.summary)
    for table, n in sorted(report.errors_by_table.items()):
        print_msg(f"  {table}: {n} broken")
    for err in report.errors[:50]:
        print_msg(f"    {err.table} {err.bubble_id} {err.field} -> {err.referenced_bubble_id}")
    if report.total_errors == 0:
        print_success("No broken relationships")


@cli.command()
@click.argument("session_id")
def progress(session_id):
    """Show progress of an invoice sync session."""
    ensure_env("DATABASE_URL")
    row = get_progress(make_engine(), session_id)
    if row is None:
        print_error(f"No sync session {session_id}")
        return
    print_msg(f"Session {session_id}: {row['status']}")
    print_msg(f"  Invoices: {row['synced_invoices']}/{row['total_invoices']}")
    if row["current_invoice_id"]:
        print_msg(f"  Current: {row['current_invoice_id']}")
    if row["error_message"]:
        print_msg(f"  Error: {row['error_message']}")


if __name__ == "__main__":
    cli()
