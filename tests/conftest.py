from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any

import httpx
import pytest
from sqlalchemy import create_engine
from tenacity import wait_none

import bbsync_files
import bbsync_http
from bbsync_db import init_db
from bbsync_http import BubbleApi

BASE = "https://app.test/api/1.1/obj"


def rec(_id: str, modified: str = "2025-01-10T00:00:00.000Z", **fields: Any) -> dict[str, Any]:
    """A Bubble-shaped record."""
    return {
        "_id": _id,
        "Created Date": "2025-01-01T00:00:00.000Z",
        "Modified Date": modified,
        **fields,
    }


class FakeBubble:
    """In-memory stand-in for the Bubble Data API, served through httpx.get."""

    def __init__(self) -> None:
        self.data: dict[str, list[dict[str, Any]]] = {}
        self.status: dict[str, int] = {}
        self.calls: list[tuple[str, dict[str, Any], dict[str, Any]]] = []

    def add(self, type_name: str, *records: dict[str, Any]) -> None:
        self.data.setdefault(type_name, []).extend(records)

    def get(self, url, headers=None, params=None, timeout=None):
        params = dict(params or {})
        self.calls.append((url, params, dict(headers or {})))
        request = httpx.Request("GET", url)
        parts = url[len(BASE) + 1 :].split("/")
        type_name = parts[0]

        if type_name in self.status:
            return httpx.Response(self.status[type_name], text="nope", request=request)

        records = self.data.get(type_name)
        if len(parts) == 2:
            for r in records or []:
                if r["_id"] == parts[1]:
                    return httpx.Response(200, json={"response": r}, request=request)
            return httpx.Response(404, json={"status": "NOT_FOUND"}, request=request)

        if records is None:
            return httpx.Response(404, json={"status": "NOT_FOUND"}, request=request)

        constraints = json.loads(params.get("constraints", "[]"))
        matching = [
            r
            for r in records
            if all(r.get(c["key"]) == c.get("value") for c in constraints)
        ]
        cursor = int(params.get("cursor", 0))
        limit = int(params.get("limit", 100))
        page = matching[cursor : cursor + limit]
        body = {
            "response": {
                "cursor": cursor,
                "results": page,
                "count": len(page),
                "remaining": max(0, len(matching) - cursor - len(page)),
            }
        }
        return httpx.Response(200, json=body, request=request)

    def list_calls(self, type_name: str) -> list[dict[str, Any]]:
        return [p for (u, p, _) in self.calls if u == f"{BASE}/{type_name}"]


class FakeCdn:
    """Serves file bodies through httpx.stream."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.requested: list[str] = []

    @contextmanager
    def stream(self, method, url, **kwargs):
        self.requested.append(url)
        request = httpx.Request(method, url)
        if url in self.files:
            yield httpx.Response(200, content=self.files[url], request=request)
        else:
            yield httpx.Response(404, content=b"missing", request=request)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(bbsync_http.http_get.retry, "wait", wait_none())
    monkeypatch.setattr(bbsync_files.download_file.retry, "wait", wait_none())


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'bbsync.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def api():
    return BubbleApi(base=BASE, api_key="test-key", page_size=2, timeout=5)


@pytest.fixture
def bubble(monkeypatch):
    fake = FakeBubble()
    monkeypatch.setattr(httpx, "get", fake.get)
    return fake


@pytest.fixture
def cdn(monkeypatch):
    fake = FakeCdn()
    monkeypatch.setattr(httpx, "stream", fake.stream)
    return fake
