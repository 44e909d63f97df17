import pytest
from sqlalchemy import insert

from bbsync_db import (
    agent,
    customer,
    get_row,
    invoice,
    invoice_item,
    payment,
    submitted_payment,
    user,
)
from bbsync_validator import validate_and_rebuild_relationships


@pytest.fixture
def graph(engine):
    with engine.begin() as conn:
        conn.execute(insert(agent).values(bubble_id="a1"))
        conn.execute(insert(user).values(bubble_id="u1", linked_agent_profile="a-gone"))
        conn.execute(insert(customer).values(customer_id="c1"))
        conn.execute(
            insert(invoice).values(
                bubble_id="i1",
                linked_customer="c1",
                linked_agent="a1",
                linked_payment=["p1", "sp1", "p-gone"],
                linked_invoice_item=["it1", "it-gone"],
                linked_seda_registration="s-gone",
                created_by="u1",
            )
        )
        conn.execute(insert(payment).values(bubble_id="p1", linked_invoice="i1"))
        conn.execute(insert(submitted_payment).values(bubble_id="sp1", linked_invoice="i1"))
        conn.execute(insert(invoice_item).values(bubble_id="it1", linked_invoice="i1"))
    return engine


def test_reports_dangling_references(graph):
    report = validate_and_rebuild_relationships(graph)

    assert report.total_errors == 4
    assert report.errors_by_table == {"invoice": 3, "user": 1}
    broken = {(e.table, e.field, e.referenced_bubble_id) for e in report.errors}
    assert broken == {
        ("invoice", "linked_payment", "p-gone"),
        ("invoice", "linked_invoice_item", "it-gone"),
        ("invoice", "linked_seda_registration", "s-gone"),
        ("user", "linked_agent_profile", "a-gone"),
    }
    payment_err = next(e for e in report.errors if e.field == "linked_payment")
    assert payment_err.referenced_table == "payment or submitted_payment"
    assert payment_err.bubble_id == "i1"
    assert report.fixed_relationships == 0
    assert report.completed_at is not None
    # i1: 1 customer + 1 agent + 3 payments + 2 items + 1 seda + 1 creator
    assert report.total_relationships_checked >= 9

    with graph.connect() as conn:
        assert get_row(conn, "invoice", "i1")["linked_seda_registration"] == "s-gone"


def test_fix_nulls_singles_and_filters_arrays(graph):
    report = validate_and_rebuild_relationships(graph, fix_broken_links=True)

    assert report.fixed_relationships == 4
    with graph.connect() as conn:
        inv = get_row(conn, "invoice", "i1")
        usr = get_row(conn, "user", "u1")
    assert inv["linked_payment"] == ["p1", "sp1"]
    assert inv["linked_invoice_item"] == ["it1"]
    assert inv["linked_seda_registration"] is None
    assert inv["linked_customer"] == "c1"
    assert usr["linked_agent_profile"] is None

    assert validate_and_rebuild_relationships(graph).total_errors == 0


def test_array_with_no_valid_entries_becomes_null(engine):
    with engine.begin() as conn:
        conn.execute(insert(invoice).values(bubble_id="i2", linked_payment=["x", "y"]))

    validate_and_rebuild_relationships(engine, fix_broken_links=True)

    with engine.connect() as conn:
        assert get_row(conn, "invoice", "i2")["linked_payment"] is None


def test_validate_only_never_writes(graph):
    report = validate_and_rebuild_relationships(graph, fix_broken_links=True, validate_only=True)

    assert report.total_errors == 4
    assert report.fixed_relationships == 0
    with graph.connect() as conn:
        assert get_row(conn, "user", "u1")["linked_agent_profile"] == "a-gone"


def test_table_filter(graph):
    report = validate_and_rebuild_relationships(graph, tables=["user"])

    assert report.total_records_checked == 1
    assert report.errors_by_table == {"user": 1}
