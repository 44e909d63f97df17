from __future__ import annotations

from typing import Any, NamedTuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from bbsync_db import KEY_COLUMNS, get_table, key_column, load_ids
from bbsync_mappings import utc_now
from bbsync_models import BrokenLink, ValidationReport

logger = structlog.get_logger()


class Relationship(NamedTuple):
    field: str
    targets: tuple[str, ...]
    is_array: bool = False


_PAYMENT_LINKS = [
    Relationship("linked_invoice", ("invoice",)),
    Relationship("linked_customer", ("customer",)),
    Relationship("linked_agent", ("agent",)),
    Relationship("created_by", ("user",)),
]

# Foreign-key-shaped columns per table. Bubble ids are plain text, so nothing
# in the database enforces these.
RELATIONSHIPS: dict[str, list[Relationship]] = {
    "invoice": [
        Relationship("linked_customer", ("customer",)),
        Relationship("linked_agent", ("agent",)),
        Relationship("linked_payment", ("payment", "submitted_payment"), is_array=True),
        Relationship("linked_seda_registration", ("seda_registration",)),
        Relationship("linked_invoice_item", ("invoice_item",), is_array=True),
        Relationship("created_by", ("user",)),
    ],
    "payment": _PAYMENT_LINKS,
    "submitted_payment": _PAYMENT_LINKS,
    "seda_registration": [
        Relationship("linked_customer", ("customer",)),
        Relationship("linked_invoice", ("invoice",), is_array=True),
        Relationship("created_by", ("user",)),
    ],
    "invoice_item": [
        Relationship("linked_invoice", ("invoice",)),
        Relationship("created_by", ("user",)),
    ],
    "user": [Relationship("linked_agent_profile", ("agent",))],
}


def _refs(value: Any, is_array: bool) -> list[str]:
    if value is None or value == "":
        return []
    if is_array:
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v]
    return [str(value)]


def _validate_table(
    engine: Engine,
    table_name: str,
    rels: list[Relationship],
    ids: dict[str, set[str]],
    report: ValidationReport,
    fix: bool,
) -> None:
    t = get_table(table_name)
    key = key_column(table_name)
    valid = {r.field: set().union(*(ids[target] for target in r.targets)) for r in rels}

    with engine.connect() as conn:
        rows = (
            conn.execute(select(t.c.id, t.c[key], *[t.c[r.field] for r in rels]).order_by(t.c.id))
            .mappings()
            .all()
        )

    for row in rows:
        report.total_records_checked += 1
        fixes: dict[str, Any] = {}
        fixed = 0

        for rel in rels:
            refs = _refs(row[rel.field], rel.is_array)
            report.total_relationships_checked += len(refs)
            broken = [ref for ref in refs if ref not in valid[rel.field]]
            if not broken:
                continue

            target_label = " or ".join(rel.targets)
            for ref in broken:
                report.errors.append(
                    BrokenLink(
                        table=table_name,
                        record_id=row["id"],
                        bubble_id=row[key],
                        field=rel.field,
                        referenced_bubble_id=ref,
                        referenced_table=target_label,
                        error=f"{rel.field} references missing {target_label} {ref}",
                    )
                )
            report.errors_by_table[table_name] = (
                report.errors_by_table.get(table_name, 0) + len(broken)
            )

            if fix:
                if rel.is_array:
                    keep = [ref for ref in refs if ref in valid[rel.field]]
                    fixes[rel.field] = keep or None
                else:
                    fixes[rel.field] = None
                fixed += len(broken)

        if fixes:
            fixes["updated_at"] = utc_now()
            with engine.begin() as conn:
                conn.execute(update(t).where(t.c.id == row["id"]).values(**fixes))
            report.fixed_relationships += fixed
            logger.info(
                "Fixed broken links",
                table=table_name,
                bubble_id=row[key],
                fields=[k for k in fixes if k != "updated_at"],
            )


def validate_and_rebuild_relationships(
    engine: Engine,
    fix_broken_links: bool = False,
    validate_only: bool = False,
    tables: list[str] | None = None,
) -> ValidationReport:
    """Check every foreign-key-shaped column against the ids actually present.

    With fix_broken_links (and not validate_only), dangling single references
    are nulled and arrays are filtered down to their valid entries.
    """
    report = ValidationReport()
    fix = fix_broken_links and not validate_only

    with engine.connect() as conn:
        ids = {name: load_ids(conn, name) for name in KEY_COLUMNS}
    logger.info("Loaded id sets", sizes={k: len(v) for k, v in ids.items()})

    for table_name, rels in RELATIONSHIPS.items():
        if tables and table_name not in tables:
            continue
        _validate_table(engine, table_name, rels, ids, report, fix)

    report.total_errors = len(report.errors)
    report.completed_at = utc_now()
    report.summary = (
        f"Checked {report.total_records_checked} records and "
        f"{report.total_relationships_checked} relationships: "
        f"{report.total_errors} broken, {report.fixed_relationships} fixed"
    )
    logger.info(
        "Relationship validation finished",
        records=report.total_records_checked,
        relationships=report.total_relationships_checked,
        errors=report.total_errors,
        fixed=report.fixed_relationships,
    )
    return report
