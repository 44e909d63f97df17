from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from bbsync_config import SYNC_ORDER
from bbsync_db import agent, get_row, invoice, invoice_item, submitted_payment, user
from bbsync_http import BubbleApiError
from bbsync_progress import get_progress
from bbsync_sync import (
    parse_id_list,
    sync_by_id_list,
    sync_complete_invoice_package,
    sync_invoice_package_with_relations,
    sync_invoice_with_full_integrity,
)
from conftest import rec

MARCH = "2025-03-05T10:00:00.000Z"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def package(bubble):
    """One invoice with every kind of relation it can have."""
    bubble.add("agent", rec("a1", Name="Agent One"))
    bubble.add(
        "user",
        rec(
            "u1",
            authentication={"email": {"email": "u1@example.com"}},
            **{"Linked Agent Profile": "a1"},
        ),
        rec("u2", **{"Linked Agent Profile": "a-other"}),
    )
    bubble.add("Customer_Profile", rec("c1", Name="Customer One"))
    bubble.add(
        "invoice",
        rec(
            "i1",
            modified=MARCH,
            **{
                "Invoice ID": 1001,
                "Linked Customer": "c1",
                "Linked Agent": "a1",
                "Linked Payment": ["p1", "sp1"],
                "Linked Invoice Item": ["it1", "it2"],
                "Linked SEDA Registration": "s1",
            },
        ),
    )
    bubble.add("invoice_item", rec("it1", AMOUNT=100), rec("it2", AMOUNT=50))
    bubble.add("seda_registration", rec("s1", **{"Linked Customer": "c1"}))
    bubble.add("invoice_template", rec("t1", **{"Template Name": "Default"}))
    bubble.add("payment", rec("p1", Amount=75, **{"Linked Invoice": "i1"}))
    bubble.add("submit_payment", rec("sp1", Amount=75, **{"Linked Invoice": "i1"}))
    return bubble


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


def test_full_sync_upserts_every_entity_in_order(engine, api, package):
    results = sync_complete_invoice_package(engine, api)

    assert results.errors == []
    assert list(results.counts) == SYNC_ORDER
    assert results.synced("users") == 2
    assert results.synced("invoice_items") == 2
    assert results.synced("submitted_payments") == 1

    list_order = [u.rsplit("/", 1)[1] for (u, p, _) in package.calls]
    assert list_order == [
        "agent",
        "user",
        "Customer_Profile",
        "invoice",
        "invoice_item",
        "seda_registration",
        "invoice_template",
        "payment",
        "submit_payment",
    ]

    with engine.connect() as conn:
        inv = get_row(conn, "invoice", "i1")
        items = conn.execute(select(invoice_item.c.linked_invoice)).scalars().all()
        sp = get_row(conn, "submitted_payment", "sp1")
        assert get_row(conn, "customer", "c1")["name"] == "Customer One"
        assert get_row(conn, "user", "u1")["email"] == "u1@example.com"
    # total filled from item amounts, items pointed back at the invoice
    assert inv["total_amount"] == 150.0
    assert inv["invoice_number"] == "1001"
    assert inv["last_synced_at"] is not None
    assert items == ["i1", "i1"]
    assert sp["status"] == "pending"


def test_full_sync_respects_modified_window(engine, api, package):
    results = sync_complete_invoice_package(engine, api, since=utc(2025, 3, 1))

    assert results.synced("invoices") == 1
    assert results.synced("agents") == 0
    assert results.count("agents").skipped == 1
    assert _count(engine, agent) == 0


def test_fetch_failure_stops_only_that_table(engine, api, package):
    package.status["user"] = 401

    results = sync_complete_invoice_package(engine, api)

    assert any(e.startswith("user: fetch failed") for e in results.errors)
    assert _count(engine, user) == 0
    assert results.synced("invoices") == 1
    assert results.synced("submitted_payments") == 1


def test_bad_record_is_collected_and_run_continues(engine, api, package):
    package.add("agent", {"Name": "no id here", "Modified Date": MARCH})

    results = sync_complete_invoice_package(engine, api)

    assert len(results.errors) == 1
    assert results.errors[0] == "agent None: record has no _id"
    assert results.count("agents").failed == 1
    assert results.synced("agents") == 1


def test_older_remote_does_not_overwrite(engine, api, package):
    sync_complete_invoice_package(engine, api)
    with engine.begin() as conn:
        conn.execute(
            invoice.update()
            .where(invoice.c.bubble_id == "i1")
            .values(status="paid", modified_date=utc(2025, 6, 1))
        )

    results = sync_complete_invoice_package(engine, api)

    assert results.count("invoices").skipped == 1
    with engine.connect() as conn:
        assert get_row(conn, "invoice", "i1")["status"] == "paid"


def test_full_sync_can_cascade_into_files(engine, api, package, cdn, tmp_path):
    package.add("payment", rec("p2", Attachment=["//cdn.test/f1/slip.pdf"]))
    cdn.files["https://cdn.test/f1/slip.pdf"] = b"%PDF-1.4"

    results = sync_complete_invoice_package(
        engine,
        api,
        sync_files=True,
        storage_root=tmp_path,
        file_base_url="https://admin.test",
    )

    assert results.files is not None
    assert results.files.summary.migrated == 1
    assert (tmp_path / "payments" / "attachments" / "p2_slip_1.pdf").read_bytes() == b"%PDF-1.4"


def test_invoice_package_pulls_every_relation(engine, api, package):
    results = sync_invoice_package_with_relations(
        engine, api, utc(2025, 3, 1), utc(2025, 3, 31), session_id="sess-1"
    )

    assert results.errors == []
    assert results.invoices_checked == 1
    assert results.invoices_needing_sync == 1
    assert results.synced("customers") == 1
    assert results.synced("agents") == 1
    # only users of the linked agent
    assert results.synced("users") == 1
    assert results.synced("invoices") == 1
    assert results.synced("invoice_items") == 2
    assert results.synced("payments") == 1
    assert results.synced("submitted_payments") == 1
    assert results.synced("seda_registrations") == 1
    assert results.synced("invoice_templates") == 1

    with engine.connect() as conn:
        assert get_row(conn, "user", "u2") is None
        assert get_row(conn, "invoice_item", "it2")["linked_invoice"] == "i1"
        assert get_row(conn, "invoice", "i1")["total_amount"] == 150.0
        assert conn.execute(select(submitted_payment.c.bubble_id)).scalars().all() == ["sp1"]

    progress = get_progress(engine, "sess-1")
    assert progress["status"] == "completed"
    assert progress["total_invoices"] == 1
    assert progress["synced_invoices"] == 1


def test_invoice_package_skips_unchanged_invoices(engine, api, package):
    window = (utc(2025, 3, 1), utc(2025, 3, 31))
    sync_invoice_package_with_relations(engine, api, *window)

    again = sync_invoice_package_with_relations(engine, api, *window)
    assert again.invoices_checked == 1
    assert again.invoices_needing_sync == 0
    assert again.synced("invoices") == 0
    assert again.synced("invoice_templates") == 0

    # a newer customer in Bubble pulls the whole invoice package again
    package.data["Customer_Profile"][0]["Modified Date"] = "2025-04-01T00:00:00.000Z"
    third = sync_invoice_package_with_relations(engine, api, *window)
    assert third.invoices_needing_sync == 1
    with engine.connect() as conn:
        stored = get_row(conn, "customer", "c1")["modified_date"]
    assert stored.replace(tzinfo=timezone.utc) == utc(2025, 4, 1)


def test_invoice_package_ignores_invoices_outside_window(engine, api, package):
    results = sync_invoice_package_with_relations(engine, api, utc(2025, 1, 1), utc(2025, 2, 1))
    assert results.invoices_checked == 0
    assert _count(engine, invoice) == 0
    assert package.list_calls("invoice_template") == []


def test_invoice_listing_failure_marks_session_error(engine, api, package):
    package.status["invoice"] = 400

    with pytest.raises(BubbleApiError):
        sync_invoice_package_with_relations(
            engine, api, utc(2025, 3, 1), utc(2025, 3, 31), session_id="sess-err"
        )

    progress = get_progress(engine, "sess-err")
    assert progress["status"] == "error"
    assert "400" in progress["error_message"]
    assert progress["completed_at"] is not None
    assert package.list_calls("invoice_template") == []


def test_integrity_sync_pulls_one_invoice_and_its_relations(engine, api, package):
    package.data["invoice"][0]["Created By"] = "u1"

    results = sync_invoice_with_full_integrity(engine, api, "i1")

    assert results.errors == []
    assert results.invoices_needing_sync == 1
    for name in ("agents", "customers", "users", "payments", "submitted_payments"):
        assert results.synced(name) == 1, name
    assert results.synced("invoice_items") == 2
    assert results.synced("seda_registrations") == 1
    assert results.synced("invoices") == 1
    # no list calls: everything is fetched by id
    assert package.list_calls("invoice") == []
    assert package.list_calls("invoice_template") == []
    with engine.connect() as conn:
        assert get_row(conn, "invoice", "i1")["total_amount"] == 150.0
        assert get_row(conn, "invoice_item", "it1")["linked_invoice"] == "i1"
        assert get_row(conn, "user", "u2") is None


def test_integrity_sync_skips_up_to_date_invoice_unless_forced(engine, api, package):
    sync_invoice_with_full_integrity(engine, api, "i1")

    again = sync_invoice_with_full_integrity(engine, api, "i1")
    assert again.invoices_needing_sync == 0
    assert again.count("invoices").skipped == 1
    assert again.synced("customers") == 0

    forced = sync_invoice_with_full_integrity(engine, api, "i1", force=True)
    assert forced.invoices_needing_sync == 1
    assert forced.synced("invoices") == 1
    assert forced.synced("customers") == 1


def test_integrity_sync_records_missing_invoice(engine, api, package):
    results = sync_invoice_with_full_integrity(engine, api, "i-missing")

    assert results.count("invoices").failed == 1
    assert results.errors[0].startswith("invoice i-missing:")
    assert _count(engine, invoice) == 0


def test_parse_id_list_handles_csv_and_tsv():
    text = "\n".join(
        [
            "type,id,modified_date",
            "invoice,i1,2025-03-05T10:00:00Z",
            "SEDA\ts1\t2025-01-10T00:00:00Z",
            "quote,q1,2025-01-01",
            "invoice,i9,not-a-date",
            "",
            "invoice",
        ]
    )

    rows = parse_id_list(text)

    assert [(r.kind, r.record_id) for r in rows] == [("invoice", "i1"), ("seda", "s1")]
    assert rows[0].modified == utc(2025, 3, 5, 10)


def test_id_list_sync_fetches_only_newer_records(engine, api, package):
    rows = parse_id_list(
        "invoice,i1,2025-03-05T10:00:00Z\n"
        "seda,s1,2025-01-10T00:00:00Z\n"
        "invoice,i-missing,2025-03-05T10:00:00Z\n"
    )

    results = sync_by_id_list(engine, api, rows)

    assert len(results.errors) == 1
    assert results.errors[0].startswith("invoice i-missing:")
    assert results.count("invoices").failed == 1
    assert results.synced("invoices") == 1
    assert results.synced("invoice_items") == 2
    assert results.synced("seda_registrations") == 1
    assert results.synced("customers") == 1
    assert results.synced("agents") == 1
    assert results.synced("users") == 1
    assert results.synced("payments") == 1
    assert results.synced("submitted_payments") == 1
    assert package.list_calls("invoice") == []
    with engine.connect() as conn:
        assert get_row(conn, "invoice", "i1")["total_amount"] == 150.0

    again = sync_by_id_list(engine, api, rows[:2])
    assert again.count("invoices").skipped == 1
    assert again.count("seda_registrations").skipped == 1
    assert again.synced("invoices") == 0
    assert again.synced("customers") == 0
