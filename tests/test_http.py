import json

import httpx
import pytest

from bbsync_http import (
    BubbleApiError,
    BubbleNotFound,
    constraint,
    fetch_all,
    fetch_all_ids,
    fetch_page,
    fetch_record,
)
from conftest import BASE, rec


def test_fetch_all_walks_cursor_until_nothing_remains(api, bubble):
    bubble.add("invoice", *[rec(f"inv{i}") for i in range(5)])

    ids = [r["_id"] for r in fetch_all(api, "invoice")]

    assert ids == ["inv0", "inv1", "inv2", "inv3", "inv4"]
    cursors = [p["cursor"] for p in bubble.list_calls("invoice")]
    assert cursors == [0, 2, 4]
    assert all(p["limit"] == 2 for p in bubble.list_calls("invoice"))


def test_requests_carry_bearer_key(api, bubble):
    bubble.add("agent", rec("a1"))
    list(fetch_all(api, "agent"))
    _, _, headers = bubble.calls[0]
    assert headers["Authorization"] == "Bearer test-key"
    assert headers["Content-Type"] == "application/json"


def test_constraints_are_sent_as_json(api, bubble):
    bubble.add(
        "user",
        rec("u1", **{"Linked Agent Profile": "a1"}),
        rec("u2", **{"Linked Agent Profile": "a2"}),
    )

    found = list(fetch_all(api, "user", [constraint("Linked Agent Profile", "equals", "a1")]))

    assert [u["_id"] for u in found] == ["u1"]
    sent = json.loads(bubble.list_calls("user")[0]["constraints"])
    assert sent == [{"key": "Linked Agent Profile", "constraint_type": "equals", "value": "a1"}]


def test_list_404_means_no_records(api, bubble):
    assert fetch_page(api, "payment") == ([], 0)
    assert list(fetch_all(api, "payment")) == []


def test_fetch_record_and_not_found(api, bubble):
    bubble.add("Customer_Profile", rec("cus1", Name="Siti"))
    assert fetch_record(api, "Customer_Profile", "cus1")["Name"] == "Siti"
    with pytest.raises(BubbleNotFound):
        fetch_record(api, "Customer_Profile", "missing")


def test_client_errors_are_not_retried(api, bubble):
    bubble.status["agent"] = 401
    with pytest.raises(BubbleApiError):
        fetch_page(api, "agent")
    assert len(bubble.calls) == 1


def test_server_errors_are_retried(api, monkeypatch):
    attempts = []

    def flaky_get(url, headers=None, params=None, timeout=None):
        attempts.append(url)
        request = httpx.Request("GET", url)
        if len(attempts) < 3:
            return httpx.Response(503, text="busy", request=request)
        body = {"response": {"results": [rec("a1")], "remaining": 0}}
        return httpx.Response(200, json=body, request=request)

    monkeypatch.setattr(httpx, "get", flaky_get)

    results, remaining = fetch_page(api, "agent")

    assert [r["_id"] for r in results] == ["a1"]
    assert remaining == 0
    assert len(attempts) == 3
    assert attempts[0] == f"{BASE}/agent"


def test_retries_give_up_after_four_attempts(api, monkeypatch):
    attempts = []

    def always_busy(url, headers=None, params=None, timeout=None):
        attempts.append(url)
        return httpx.Response(429, text="slow down", request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", always_busy)

    with pytest.raises(httpx.HTTPStatusError):
        fetch_page(api, "agent")
    assert len(attempts) == 4


def test_fetch_all_ids(api, bubble):
    bubble.add("invoice_item", rec("it1"), rec("it2"), rec("it3"))
    assert fetch_all_ids(api, "invoice_item") == {"it1", "it2", "it3"}
