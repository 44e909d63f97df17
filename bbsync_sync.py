"""Bubble → Postgres sync flows.

Entry points:

- sync_complete_invoice_package: page through all nine Bubble types in
  dependency order and upsert everything (optionally within a Modified Date
  window), then optionally migrate attachments.
- sync_invoice_package_with_relations: pick invoices modified in a window,
  decide which of them (or their customer / agent / SEDA / payments) changed,
  and pull each such invoice together with every record it links to.
- sync_invoice_with_full_integrity: the same for one invoice by id.
- sync_by_id_list: targeted sync from a "type,id,modified_date" list, only
  fetching what is newer than the local copy.

All are best effort: a failing record is logged and collected in
SyncResults.errors, and the run moves on.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, NamedTuple

import httpx
import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.engine import Connection, Engine

from bbsync_config import SYNC_ORDER, ConfigModel, EntityConfig, load_config
from bbsync_db import get_row, get_table, invoice, invoice_item, upsert
from bbsync_files import migrate_all_bubble_files
from bbsync_http import (
    BubbleApi,
    BubbleApiError,
    BubbleNotFound,
    constraint,
    fetch_all,
    fetch_record,
)
from bbsync_mappings import MappingError, ensure_utc, map_record, parse_bubble_date, utc_now
from bbsync_models import EntityCount, SyncResults
from bbsync_progress import complete_progress, create_progress, fail_progress, update_progress

logger = structlog.get_logger()

FETCH_ERRORS = (BubbleApiError, httpx.HTTPError)


def in_window(record: dict[str, Any], since: datetime | None, until: datetime | None) -> bool:
    """True if the record's Modified Date falls within [since, until]."""
    if since is None and until is None:
        return True
    modified = parse_bubble_date(record.get("Modified Date"))
    if modified is None:
        return since is None
    if since is not None and modified < ensure_utc(since):
        return False
    if until is not None and modified > ensure_utc(until):
        return False
    return True


def _upsert_record(
    conn: Connection,
    entity: EntityConfig,
    record: dict[str, Any],
    extra: dict[str, Any] | None = None,
) -> bool:
    row = map_record(entity, record)
    if extra:
        row.update(extra)
    now = utc_now()
    row["last_synced_at"] = now
    row["updated_at"] = now
    return upsert(conn, get_table(entity.table), row, entity.conflict_column)


def _record_failure(
    results: SyncResults,
    count: EntityCount,
    type_name: str,
    record_id: Any,
    error: Exception,
) -> None:
    if isinstance(error, MappingError):
        type_name, record_id = error.type_name, error.record_id
    logger.error(
        "Failed to process record", type_name=type_name, record_id=record_id, error=str(error)
    )
    results.errors.append(f"{type_name} {record_id}: {error}")
    count.failed += 1


def _store(
    engine: Engine,
    name: str,
    entity: EntityConfig,
    record: dict[str, Any],
    results: SyncResults,
    extra: dict[str, Any] | None = None,
) -> bool | None:
    """Upsert an already fetched record in its own transaction and count it.

    Returns True if written, False if the stored row was newer, None on failure.
    """
    count = results.count(name)
    try:
        with engine.begin() as conn:
            written = _upsert_record(conn, entity, record, extra)
    except Exception as e:
        _record_failure(results, count, entity.type_name, record.get("_id"), e)
        return None

    if written:
        count.synced += 1
    else:
        count.skipped += 1
    return written


def _fetch_one(
    api: BubbleApi, name: str, entity: EntityConfig, record_id: str, results: SyncResults
) -> dict[str, Any] | None:
    try:
        return fetch_record(api, entity.type_name, record_id)
    except FETCH_ERRORS as e:
        _record_failure(results, results.count(name), entity.type_name, record_id, e)
        return None


def sync_table(
    engine: Engine,
    api: BubbleApi,
    name: str,
    entity: EntityConfig,
    results: SyncResults,
    since: datetime | None = None,
    until: datetime | None = None,
    constraints: list[dict[str, Any]] | None = None,
) -> EntityCount:
    """Page through one Bubble type and upsert every record into its table.

    Each record commits on its own so a bad row never rolls back its
    neighbours. A fetch failure stops this table only.
    """
    count = results.count(name)
    logger.info("Syncing table", entity=name, type_name=entity.type_name, table=entity.table)

    try:
        for record in fetch_all(api, entity.type_name, constraints):
            if not in_window(record, since, until):
                count.skipped += 1
                continue
            _store(engine, name, entity, record, results)
    except FETCH_ERRORS as e:
        logger.error("Fetch failed, stopping table", type_name=entity.type_name, error=str(e))
        results.errors.append(f"{entity.type_name}: fetch failed: {e}")

    logger.info(
        "Table synced",
        entity=name,
        synced=count.synced,
        skipped=count.skipped,
        failed=count.failed,
    )
    return count


def sync_record(
    engine: Engine,
    api: BubbleApi,
    name: str,
    entity: EntityConfig,
    record_id: str,
    results: SyncResults,
    extra: dict[str, Any] | None = None,
    raise_not_found: bool = False,
) -> bool:
    """Fetch one record by id and upsert it. Returns True if a row was written."""
    try:
        record = fetch_record(api, entity.type_name, record_id)
    except BubbleNotFound:
        if raise_not_found:
            raise
        logger.warning("Related record not found", type_name=entity.type_name, record_id=record_id)
        results.count(name).skipped += 1
        return False
    except FETCH_ERRORS as e:
        _record_failure(results, results.count(name), entity.type_name, record_id, e)
        return False

    return bool(_store(engine, name, entity, record, results, extra))


def _sync_payment(
    engine: Engine, api: BubbleApi, ents: dict[str, EntityConfig], pid: str, results: SyncResults
) -> None:
    # Linked Payment ids may point at either payment type
    try:
        sync_record(engine, api, "payments", ents["payments"], pid, results, raise_not_found=True)
    except BubbleNotFound:
        sync_record(engine, api, "submitted_payments", ents["submitted_payments"], pid, results)


def _sync_items(
    engine: Engine,
    api: BubbleApi,
    ents: dict[str, EntityConfig],
    inv_row: dict[str, Any],
    results: SyncResults,
) -> None:
    for item_id in inv_row.get("linked_invoice_item") or []:
        sync_record(
            engine,
            api,
            "invoice_items",
            ents["invoice_items"],
            item_id,
            results,
            extra={"linked_invoice": inv_row["bubble_id"]},
        )


def _sync_agent_users(
    engine: Engine,
    api: BubbleApi,
    ents: dict[str, EntityConfig],
    agent_ids: list[str],
    results: SyncResults,
) -> None:
    for aid in agent_ids:
        sync_table(
            engine,
            api,
            "users",
            ents["users"],
            results,
            constraints=[constraint("Linked Agent Profile", "equals", aid)],
        )


def invoice_total_with_fallback(
    conn: Connection,
    bubble_total: float | None,
    item_ids: list[str] | None,
    existing_total: float | None = None,
) -> float | None:
    """Bubble's total, else the sum of linked item amounts, else what we already had."""
    if bubble_total is not None:
        return bubble_total
    if item_ids:
        amounts = conn.execute(
            select(invoice_item.c.amount).where(invoice_item.c.bubble_id.in_(item_ids))
        ).scalars()
        total = sum(a for a in amounts if a is not None)
        if total > 0:
            return float(total)
    return existing_total


def backfill_invoice_items(engine: Engine, invoice_ids: set[str] | None = None) -> int:
    """Point items at their invoice and fill missing invoice totals from items.

    Returns the number of item rows re-linked.
    """
    linked = 0
    with engine.begin() as conn:
        q = select(invoice.c.bubble_id, invoice.c.linked_invoice_item, invoice.c.total_amount)
        if invoice_ids is not None:
            q = q.where(invoice.c.bubble_id.in_(invoice_ids))
        for inv_id, item_ids, total in conn.execute(q).all():
            if not item_ids:
                continue
            res = conn.execute(
                update(invoice_item)
                .where(invoice_item.c.bubble_id.in_(item_ids))
                .where(
                    or_(
                        invoice_item.c.linked_invoice.is_(None),
                        invoice_item.c.linked_invoice != inv_id,
                    )
                )
                .values(linked_invoice=inv_id)
            )
            linked += res.rowcount or 0
            if total is None:
                fallback = invoice_total_with_fallback(conn, None, item_ids)
                if fallback is not None:
                    conn.execute(
                        update(invoice)
                        .where(invoice.c.bubble_id == inv_id)
                        .values(total_amount=fallback)
                    )
    if linked:
        logger.info("Linked invoice items", count=linked)
    return linked


def sync_complete_invoice_package(
    engine: Engine,
    api: BubbleApi,
    since: datetime | None = None,
    until: datetime | None = None,
    sync_files: bool = False,
    config: ConfigModel | None = None,
    storage_root: str | None = None,
    file_base_url: str | None = None,
) -> SyncResults:
    """Sync all nine entity types in dependency order."""
    config = config or load_config()
    results = SyncResults()
    logger.info(
        "Starting full package sync",
        since=since.isoformat() if since else None,
        until=until.isoformat() if until else None,
        sync_files=sync_files,
    )

    for name in SYNC_ORDER:
        sync_table(engine, api, name, config.entities[name], results, since, until)

    try:
        backfill_invoice_items(engine)
    except Exception as e:
        logger.error("Invoice item backfill failed", error=str(e))
        results.errors.append(f"invoice_item backfill: {e}")

    if sync_files:
        results.files = migrate_all_bubble_files(
            engine,
            config=config,
            created_after=since,
            storage_root=storage_root,
            file_base_url=file_base_url,
        )

    results.completed_at = utc_now()
    logger.info(
        "Full package sync finished",
        counts={name: results.synced(name) for name in SYNC_ORDER},
        errors=len(results.errors),
    )
    return results


# ---------- Relational invoice sync ----------


def _remote_is_newer(
    conn: Connection, api: BubbleApi, entity: EntityConfig, record_id: str
) -> bool:
    try:
        remote = fetch_record(api, entity.type_name, record_id)
    except FETCH_ERRORS as e:
        logger.warning(
            "Could not fetch related record",
            type_name=entity.type_name,
            record_id=record_id,
            error=str(e),
        )
        return False

    local = get_row(conn, entity.table, record_id)
    if local is None or local["modified_date"] is None:
        return True
    remote_modified = parse_bubble_date(remote.get("Modified Date"))
    return bool(remote_modified and remote_modified > ensure_utc(local["modified_date"]))


def _any_payment_newer(conn: Connection, payment_ids: list[str]) -> bool:
    for pid in payment_ids:
        row = get_row(conn, "payment", pid) or get_row(conn, "submitted_payment", pid)
        if row is None or row["last_synced_at"] is None:
            return True
        modified = ensure_utc(row["modified_date"])
        if modified and modified > ensure_utc(row["last_synced_at"]):
            return True
    return False


def _is_newer(remote: datetime | None, local_row: dict[str, Any] | None) -> bool:
    """True when there is no usable local copy or the remote date is later."""
    if local_row is None or local_row["modified_date"] is None:
        return True
    return bool(remote and remote > ensure_utc(local_row["modified_date"]))


def invoice_needs_sync(
    engine: Engine, api: BubbleApi, config: ConfigModel, inv: dict[str, Any]
) -> bool:
    """Decide whether an invoice, or anything it links to, changed in Bubble."""
    ents = config.entities
    row = map_record(ents["invoices"], inv)

    with engine.connect() as conn:
        local = get_row(conn, "invoice", row["bubble_id"])
        if _is_newer(row["modified_date"], local):
            return True

        for column, name in (
            ("linked_customer", "customers"),
            ("linked_agent", "agents"),
            ("linked_seda_registration", "seda_registrations"),
        ):
            rid = row.get(column)
            if rid and _remote_is_newer(conn, api, ents[name], rid):
                return True

        return _any_payment_newer(conn, row.get("linked_payment") or [])


def sync_invoice_package_with_relations(
    engine: Engine,
    api: BubbleApi,
    date_from: datetime,
    date_to: datetime | None = None,
    session_id: str | None = None,
    config: ConfigModel | None = None,
) -> SyncResults:
    """Sync invoices modified in [date_from, date_to] along with all their relations.

    A failure to list invoices marks the session as errored and propagates.
    """
    config = config or load_config()
    date_to = date_to or utc_now()
    results = SyncResults(session_id=session_id)

    if session_id:
        create_progress(engine, session_id, date_from.isoformat(), date_to.isoformat())

    try:
        _run_invoice_package(engine, api, config, date_from, date_to, results)
    except Exception as e:
        if session_id:
            fail_progress(engine, session_id, str(e))
        raise

    if session_id:
        complete_progress(engine, session_id)
    results.completed_at = utc_now()
    logger.info(
        "Invoice package sync finished",
        checked=results.invoices_checked,
        needing_sync=results.invoices_needing_sync,
        counts={k: v.synced for k, v in results.counts.items()},
        errors=len(results.errors),
    )
    return results


def _run_invoice_package(
    engine: Engine,
    api: BubbleApi,
    config: ConfigModel,
    date_from: datetime,
    date_to: datetime,
    results: SyncResults,
) -> None:
    ents = config.entities
    session_id = results.session_id

    fetched = fetch_all(api, ents["invoices"].type_name)
    invoices = [r for r in fetched if in_window(r, date_from, date_to)]

    results.invoices_checked = len(invoices)
    logger.info("Invoices in window", count=len(invoices))

    to_sync: list[dict[str, Any]] = []
    rows: dict[str, dict[str, Any]] = {}
    for inv in invoices:
        try:
            if invoice_needs_sync(engine, api, config, inv):
                to_sync.append(inv)
                rows[inv["_id"]] = map_record(ents["invoices"], inv)
        except Exception as e:
            _record_failure(results, results.count("invoices"), "invoice", inv.get("_id"), e)

    results.invoices_needing_sync = len(to_sync)
    if session_id:
        update_progress(engine, session_id, total_invoices=len(to_sync))
    if not to_sync:
        return

    customers = sorted({r["linked_customer"] for r in rows.values() if r.get("linked_customer")})
    agents = sorted({r["linked_agent"] for r in rows.values() if r.get("linked_agent")})
    sedas = sorted(
        {r["linked_seda_registration"] for r in rows.values() if r.get("linked_seda_registration")}
    )
    payments = sorted({p for r in rows.values() for p in (r.get("linked_payment") or [])})

    for cid in customers:
        sync_record(engine, api, "customers", ents["customers"], cid, results)
    for aid in agents:
        sync_record(engine, api, "agents", ents["agents"], aid, results)
    _sync_agent_users(engine, api, ents, agents, results)

    for n, inv in enumerate(to_sync, 1):
        inv_id = inv["_id"]
        if session_id:
            update_progress(engine, session_id, current_invoice_id=inv_id)
        if _store(engine, "invoices", ents["invoices"], inv, results) is None:
            continue
        _sync_items(engine, api, ents, rows[inv_id], results)
        if session_id:
            update_progress(engine, session_id, synced_invoices=n)

    backfill_invoice_items(engine, set(rows))

    for pid in payments:
        _sync_payment(engine, api, ents, pid, results)
    for sid in sedas:
        sync_record(engine, api, "seda_registrations", ents["seda_registrations"], sid, results)

    # Templates are few and shared by every invoice
    sync_table(engine, api, "invoice_templates", ents["invoice_templates"], results)


def sync_invoice_with_full_integrity(
    engine: Engine,
    api: BubbleApi,
    invoice_id: str,
    force: bool = False,
    config: ConfigModel | None = None,
) -> SyncResults:
    """Sync one invoice and everything it links to, dependencies first.

    Unless force is set, an invoice whose local copy is at least as new as
    Bubble's is left alone.
    """
    config = config or load_config()
    ents = config.entities
    results = SyncResults()
    logger.info("Starting invoice integrity sync", invoice_id=invoice_id, force=force)

    inv = _fetch_one(api, "invoices", ents["invoices"], invoice_id, results)
    if inv is None:
        results.completed_at = utc_now()
        return results
    results.invoices_checked = 1

    try:
        row = map_record(ents["invoices"], inv)
    except MappingError as e:
        _record_failure(results, results.count("invoices"), "invoice", invoice_id, e)
        results.completed_at = utc_now()
        return results

    if not force:
        with engine.connect() as conn:
            local = get_row(conn, "invoice", invoice_id)
        if not _is_newer(row["modified_date"], local):
            logger.info("Invoice is up to date", invoice_id=invoice_id)
            results.count("invoices").skipped += 1
            results.completed_at = utc_now()
            return results
    results.invoices_needing_sync = 1

    if row.get("linked_agent"):
        sync_record(engine, api, "agents", ents["agents"], row["linked_agent"], results)
    if row.get("linked_customer"):
        sync_record(engine, api, "customers", ents["customers"], row["linked_customer"], results)
    if row.get("created_by"):
        sync_record(engine, api, "users", ents["users"], row["created_by"], results)
    for pid in row.get("linked_payment") or []:
        _sync_payment(engine, api, ents, pid, results)
    _sync_items(engine, api, ents, row, results)
    if row.get("linked_seda_registration"):
        sync_record(
            engine,
            api,
            "seda_registrations",
            ents["seda_registrations"],
            row["linked_seda_registration"],
            results,
        )

    if _store(engine, "invoices", ents["invoices"], inv, results) is not None:
        backfill_invoice_items(engine, {invoice_id})

    results.completed_at = utc_now()
    logger.info(
        "Invoice integrity sync finished",
        invoice_id=invoice_id,
        counts={k: v.synced for k, v in results.counts.items()},
        errors=len(results.errors),
    )
    return results


# ---------- ID-list sync ----------


class IdListRow(NamedTuple):
    kind: str
    record_id: str
    modified: datetime


# id-list type -> (entity name, table)
ID_LIST_KINDS = {
    "invoice": ("invoices", "invoice"),
    "seda": ("seda_registrations", "seda_registration"),
}


def parse_id_list(text: str) -> list[IdListRow]:
    """Parse "type,id,modified_date" lines (comma or tab separated).

    A header row is skipped. Unknown types, blank ids and bad dates are dropped.
    """
    rows: list[IdListRow] = []
    for line in text.strip().splitlines():
        parts = [p.strip() for p in re.split(r"[,\t]+", line.strip())]
        if len(parts) < 2 or parts[0].lower() == "type":
            continue
        kind, record_id = parts[0].lower(), parts[1]
        if kind not in ID_LIST_KINDS or not record_id:
            continue
        modified = parse_bubble_date(parts[2] if len(parts) > 2 else None)
        if modified is None:
            logger.warning("Invalid date in id list, skipping", kind=kind, record_id=record_id)
            continue
        rows.append(IdListRow(kind, record_id, modified))
    return rows


def sync_by_id_list(
    engine: Engine,
    api: BubbleApi,
    rows: list[IdListRow],
    config: ConfigModel | None = None,
) -> SyncResults:
    """Fetch the listed invoices and SEDA registrations that are newer than ours."""
    config = config or load_config()
    ents = config.entities
    results = SyncResults()

    wanted: dict[str, list[str]] = {kind: [] for kind in ID_LIST_KINDS}
    with engine.connect() as conn:
        for r in rows:
            name, table = ID_LIST_KINDS[r.kind]
            if _is_newer(r.modified, get_row(conn, table, r.record_id)):
                wanted[r.kind].append(r.record_id)
            else:
                results.count(name).skipped += 1

    results.invoices_checked = sum(1 for r in rows if r.kind == "invoice")
    results.invoices_needing_sync = len(wanted["invoice"])
    logger.info(
        "Id list checked",
        invoices=len(wanted["invoice"]),
        sedas=len(wanted["seda"]),
        skipped=len(rows) - len(wanted["invoice"]) - len(wanted["seda"]),
    )

    customers: set[str] = set()
    agents: set[str] = set()
    payments: set[str] = set()
    fetched_invoices: set[str] = set()

    for inv_id in wanted["invoice"]:
        inv = _fetch_one(api, "invoices", ents["invoices"], inv_id, results)
        if inv is None or _store(engine, "invoices", ents["invoices"], inv, results) is None:
            continue
        row = map_record(ents["invoices"], inv)
        fetched_invoices.add(inv_id)
        if row.get("linked_customer"):
            customers.add(row["linked_customer"])
        if row.get("linked_agent"):
            agents.add(row["linked_agent"])
        payments.update(row.get("linked_payment") or [])
        _sync_items(engine, api, ents, row, results)

    for sid in wanted["seda"]:
        seda = _fetch_one(api, "seda_registrations", ents["seda_registrations"], sid, results)
        if seda is None:
            continue
        if _store(engine, "seda_registrations", ents["seda_registrations"], seda, results) is None:
            continue
        row = map_record(ents["seda_registrations"], seda)
        if row.get("linked_customer"):
            customers.add(row["linked_customer"])

    for cid in sorted(customers):
        sync_record(engine, api, "customers", ents["customers"], cid, results)
    for aid in sorted(agents):
        sync_record(engine, api, "agents", ents["agents"], aid, results)
    _sync_agent_users(engine, api, ents, sorted(agents), results)
    for pid in sorted(payments):
        _sync_payment(engine, api, ents, pid, results)

    if fetched_invoices:
        backfill_invoice_items(engine, fetched_invoices)

    results.completed_at = utc_now()
    logger.info(
        "Id list sync finished",
        counts={k: v.synced for k, v in results.counts.items()},
        errors=len(results.errors),
    )
    return results
