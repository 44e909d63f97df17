from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any, cast

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bbsync_settings import require_settings

logger = structlog.get_logger()


class BubbleApiError(RuntimeError):
    """Non-retryable failure talking to the Bubble Data API."""


class BubbleNotFound(BubbleApiError):
    """The requested type or record does not exist (HTTP 404)."""


class BubbleApi(BaseModel):
    base: str
    api_key: str
    page_size: int = 100
    timeout: int = 30

    @classmethod
    def from_settings(cls) -> BubbleApi:
        s = require_settings()
        return cls(
            base=s.BUBBLE_API_BASE,
            api_key=s.BUBBLE_API_KEY,
            page_size=s.PAGE_SIZE_DEFAULT,
            timeout=s.HTTP_TIMEOUT,
        )


def build_url(base: str, path: str) -> str:
    """Join the Data API base (".../api/1.1/obj") and a type or type/id path."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def constraint(key: str, constraint_type: str, value: Any = None) -> dict[str, Any]:
    c: dict[str, Any] = {"key": key, "constraint_type": constraint_type}
    if value is not None:
        c["value"] = value
    return c


def _handle_rate_limit_and_server_error(r: httpx.Response, url: str) -> None:
    """Raise HTTPStatusError for 429 and 5xx so Tenacity retries them."""
    if r.status_code == 429:
        logger.warning("Rate limited, backing off", url=url, status_code=r.status_code)
        raise httpx.HTTPStatusError("Rate limited", request=r.request, response=r)
    if r.status_code >= 500:
        logger.error(
            "Server error",
            url=url,
            status_code=r.status_code,
            response=r.text[:500],
        )
        raise httpx.HTTPStatusError(
            f"Server error {r.status_code}", request=r.request, response=r
        )


@retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential_jitter(1, 5),
    retry=retry_if_exception_type(
        (httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)
    ),
    reraise=True,
)
def http_get(api: BubbleApi, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """HTTP GET with bearer auth, retries, and structured logging.

    Returns parsed JSON as a dict. 404 raises BubbleNotFound, other 4xx raise
    BubbleApiError; neither is retried.
    """
    url = build_url(api.base, path)
    logger.debug("Making GET request", url=url, params=params)

    headers = {
        "Authorization": f"Bearer {api.api_key}",
        "Content-Type": "application/json",
    }
    r = httpx.get(url, headers=headers, params=params, timeout=api.timeout)

    _handle_rate_limit_and_server_error(r, url)
    if r.status_code == 404:
        raise BubbleNotFound(f"GET {url} -> 404")
    if r.status_code >= 400:
        logger.error(
            "HTTP error",
            url=url,
            status_code=r.status_code,
            response=r.text[:500],
        )
        raise BubbleApiError(f"GET {url} -> {r.status_code}: {r.text[:200]}")

    try:
        return cast(dict[str, Any], r.json())
    except ValueError as e:
        raise BubbleApiError(f"GET {url} returned a non-JSON body") from e


def fetch_page(
    api: BubbleApi,
    type_name: str,
    cursor: int = 0,
    constraints: list[dict[str, Any]] | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Return one page of results and the API's "remaining" count."""
    params: dict[str, Any] = {"limit": api.page_size, "cursor": cursor}
    if constraints:
        params["constraints"] = json.dumps(constraints)

    try:
        data = http_get(api, type_name, params)
    except BubbleNotFound:
        # Bubble answers 404 for types with no records yet
        logger.info("No records for type", type_name=type_name)
        return [], 0

    body = data.get("response") or {}
    results = body.get("results") or []
    remaining = int(body.get("remaining") or 0)
    return results, remaining


def fetch_all(
    api: BubbleApi,
    type_name: str,
    constraints: list[dict[str, Any]] | None = None,
) -> Iterable[dict[str, Any]]:
    """Walk the cursor until the API reports nothing remaining and yield records."""
    cursor = 0
    page_count = 0
    total_items = 0

    while True:
        page_count += 1
        results, remaining = fetch_page(api, type_name, cursor, constraints)

        logger.info(
            "Fetched page",
            type_name=type_name,
            page=page_count,
            item_count=len(results),
            total_so_far=total_items,
            remaining=remaining,
        )

        for it in results:
            total_items += 1
            yield it

        if not results or remaining <= 0:
            break
        cursor += len(results)


def fetch_record(api: BubbleApi, type_name: str, record_id: str) -> dict[str, Any]:
    data = http_get(api, f"{type_name}/{record_id}")
    record = data.get("response")
    if not record:
        raise BubbleNotFound(f"{type_name} {record_id} not found")
    return cast(dict[str, Any], record)


def fetch_all_ids(api: BubbleApi, type_name: str) -> set[str]:
    return {str(r["_id"]) for r in fetch_all(api, type_name) if r.get("_id")}
