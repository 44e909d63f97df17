from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from sqlalchemy import (
    ARRAY,
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine, RowMapping

from bbsync_settings import get_settings

logger = structlog.get_logger()

metadata = MetaData()

# text[] on Postgres, JSON on SQLite
TextArray = ARRAY(Text).with_variant(JSON(none_as_null=True), "sqlite")
Money = Numeric(asdecimal=False)


def _ts(name: str, **kw: Any) -> Column:
    return Column(name, DateTime(timezone=True), **kw)


def _sync_columns() -> list[Column]:
    return [
        _ts("created_date"),
        _ts("modified_date"),
        _ts("created_at", server_default=func.now()),
        _ts("updated_at", server_default=func.now()),
        _ts("last_synced_at"),
    ]


agent = Table(
    "agent",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("name", Text),
    Column("email", Text),
    Column("contact", Text),
    Column("agent_type", Text),
    Column("address", Text),
    Column("bankin_account", Text),
    Column("banker", Text),
    *_sync_columns(),
)

user = Table(
    "user",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("email", Text),
    Column("linked_agent_profile", Text),
    Column("agent_code", Text),
    Column("dealership", Text),
    Column("profile_picture", Text),
    Column("user_signed_up", Boolean),
    Column("access_level", TextArray),
    *_sync_columns(),
)

customer = Table(
    "customer",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("customer_id", Text, unique=True, nullable=False),
    Column("name", Text),
    Column("email", Text),
    Column("phone", Text),
    Column("address", Text),
    Column("city", Text),
    Column("state", Text),
    Column("postcode", Text),
    Column("ic_number", Text),
    Column("created_by", Text),
    *_sync_columns(),
)

invoice = Table(
    "invoice",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("invoice_id", Integer),
    Column("invoice_number", Text),
    Column("amount", Money),
    Column("total_amount", Money),
    Column("status", Text),
    _ts("invoice_date"),
    Column("linked_customer", Text),
    Column("linked_agent", Text),
    Column("linked_payment", TextArray),
    Column("linked_seda_registration", Text),
    Column("linked_invoice_item", TextArray),
    Column("created_by", Text),
    *_sync_columns(),
)

invoice_item = Table(
    "invoice_item",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("description", Text),
    Column("qty", Money),
    Column("amount", Money),
    Column("unit_price", Money),
    Column("is_a_package", Boolean),
    Column("linked_invoice", Text),
    Column("created_by", Text),
    *_sync_columns(),
)

seda_registration = Table(
    "seda_registration",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("city", Text),
    Column("state", Text),
    Column("agent", Text),
    Column("linked_customer", Text),
    Column("linked_invoice", TextArray),
    Column("created_by", Text),
    Column("project_price", Money),
    Column("system_size", Money),
    Column("system_size_in_form_kwp", Money),
    Column("sunpeak_hours", Money),
    Column("reg_status", Text),
    Column("redex_status", Text),
    Column("seda_status", Text),
    Column("drawing_system_submitted", Text),
    Column("customer_signature", Text),
    Column("ic_copy_front", Text),
    Column("ic_copy_back", Text),
    Column("tnb_bill_1", Text),
    Column("tnb_bill_2", Text),
    Column("tnb_bill_3", Text),
    Column("nem_cert", Text),
    Column("mykad_pdf", Text),
    Column("property_ownership_prove", Text),
    Column("check_tnb_bill_and_meter_image", Text),
    Column("roof_images", TextArray),
    Column("site_images", TextArray),
    Column("drawing_pdf_system", TextArray),
    Column("drawing_system_actual", TextArray),
    Column("drawing_engineering_seda_pdf", TextArray),
    *_sync_columns(),
)

invoice_template = Table(
    "invoice_template",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("bubble_id", Text, unique=True, nullable=False),
    Column("template_name", Text),
    Column("company_name", Text),
    Column("company_address", Text),
    Column("company_phone", Text),
    Column("company_email", Text),
    Column("sst_registration_no", Text),
    Column("bank_name", Text),
    Column("bank_account_no", Text),
    Column("bank_account_name", Text),
    Column("logo_url", Text),
    Column("terms_and_conditions", Text),
    Column("disclaimer", Text),
    Column("active", Boolean),
    Column("is_default", Boolean),
    Column("apply_sst", Boolean),
    Column("created_by", Text),
    *_sync_columns(),
)


def _payment_columns() -> list[Column]:
    return [
        Column("id", Integer, primary_key=True),
        Column("bubble_id", Text, unique=True, nullable=False),
        Column("amount", Money),
        _ts("payment_date"),
        Column("payment_method", Text),
        Column("payment_method_v2", Text),
        Column("payment_index", Integer),
        Column("remark", Text),
        Column("issuer_bank", Text),
        Column("terminal", Text),
        Column("epp_month", Integer),
        Column("epp_type", Text),
        Column("bank_charges", Money),
        Column("verified_by", Text),
        Column("attachment", TextArray),
        Column("linked_invoice", Text),
        Column("linked_customer", Text),
        Column("linked_agent", Text),
        Column("created_by", Text),
        *_sync_columns(),
    ]


payment = Table("payment", metadata, *_payment_columns())

submitted_payment = Table(
    "submitted_payment",
    metadata,
    *_payment_columns(),
    Column("status", Text),
)

sync_progress = Table(
    "sync_progress",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("session_id", Text, unique=True, nullable=False),
    Column("status", Text, nullable=False),
    Column("total_invoices", Integer, nullable=False, default=0),
    Column("synced_invoices", Integer, nullable=False, default=0),
    Column("current_invoice_id", Text),
    Column("date_from", Text),
    Column("date_to", Text),
    Column("error_message", Text),
    _ts("started_at", server_default=func.now()),
    _ts("updated_at", server_default=func.now()),
    _ts("completed_at"),
)

KEY_COLUMNS = {
    "agent": "bubble_id",
    "user": "bubble_id",
    "customer": "customer_id",
    "invoice": "bubble_id",
    "invoice_item": "bubble_id",
    "seda_registration": "bubble_id",
    "invoice_template": "bubble_id",
    "payment": "bubble_id",
    "submitted_payment": "bubble_id",
}


def get_table(name: str) -> Table:
    try:
        return metadata.tables[name]
    except KeyError:
        raise ValueError(f"Unknown table: {name}") from None


def key_column(table_name: str) -> str:
    return KEY_COLUMNS[table_name]


def make_engine(url: str | None = None) -> Engine:
    """Create an engine; bare postgres URLs are routed to the psycopg 3 driver."""
    url = url or get_settings().DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not set")
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            url = "postgresql+psycopg://" + url[len(prefix) :]
            break
    return create_engine(url)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def _insert_for(conn: Connection) -> Callable[[Table], Any]:
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise ValueError(f"Upsert not supported for dialect: {name}")


def upsert(conn: Connection, table: Table, row: dict[str, Any], conflict_column: str) -> bool:
    """INSERT ... ON CONFLICT DO UPDATE where the incoming row is not older.

    An existing row is only overwritten when the incoming modified_date is at
    least the stored one, or when either side has none. Returns True when a
    row was inserted or updated.
    """
    unknown = [k for k in row if k not in table.c]
    if unknown:
        logger.debug("Dropping unmapped columns", table=table.name, columns=unknown)
        row = {k: v for k, v in row.items() if k in table.c}

    stmt = _insert_for(conn)(table).values(**row)
    set_ = {k: stmt.excluded[k] for k in row if k != conflict_column}
    if not set_:
        stmt = stmt.on_conflict_do_nothing(index_elements=[conflict_column])
    else:
        where = None
        if "modified_date" in row:
            where = or_(
                table.c.modified_date.is_(None),
                stmt.excluded.modified_date.is_(None),
                stmt.excluded.modified_date >= table.c.modified_date,
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=[conflict_column], set_=set_, where=where
        )
    result = conn.execute(stmt)
    return bool(result.rowcount and result.rowcount > 0)


def get_row(conn: Connection, table_name: str, key: str) -> RowMapping | None:
    t = get_table(table_name)
    col = t.c[key_column(table_name)]
    return conn.execute(select(t).where(col == key)).mappings().first()


def load_ids(conn: Connection, table_name: str) -> set[str]:
    t = get_table(table_name)
    col = t.c[key_column(table_name)]
    return {r[0] for r in conn.execute(select(col).where(col.is_not(None)))}
