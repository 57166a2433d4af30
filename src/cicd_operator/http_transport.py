from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
import re
import time
from urllib.parse import urlsplit, urlunsplit

import httpx

from cicd_operator.errors import (
    RATE_LIMIT_TEXT,
    HTTPRequestError,
    NotFoundError,
    RateLimitError,
)
from cicd_operator.observability import log_event, log_warning


LOGGER = logging.getLogger("cicd_operator.http_transport")
PAGE_SIZE = 100
_RATE_LIMIT_MARKER = re.compile(r"::(\d+)\.")
_RATE_LIMITED_STATUS_CODES = {403, 429}


def request_http(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    payload: object | None = None,
) -> httpx.Response:
    method_upper = method.upper()
    try:
        if payload is None:
            response = client.request(method_upper, url, headers=headers)
        else:
            response = client.request(method_upper, url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        log_warning(
            LOGGER,
            "git_request_failed",
            method=method_upper,
            url=_redact(url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    log_event(
        LOGGER,
        "git_request",
        method=method_upper,
        url=_redact(url),
        status_code=response.status_code,
    )
    _raise_for_status(method_upper, url, response)
    return response


def get_paginated(
    client: httpx.Client,
    url: str,
    *,
    accumulate: Callable[[object], None],
    headers: Mapping[str, str] | None = None,
    decode: Callable[[httpx.Response], object] | None = None,
) -> int:
    """Follow ``rel="next"`` links from ``url`` and hand every decoded page to ``accumulate``.

    A fixed ``per_page`` parameter is appended to the first request; later
    requests use the server-supplied next link verbatim. Returns the number of
    pages fetched.
    """
    uri = _with_page_size(url)
    pages = 0
    while True:
        response = request_http(client, "GET", uri, headers=headers)
        page = response.json() if decode is None else decode(response)
        accumulate(page)
        pages += 1

        next_link = response.links.get("next")
        if not next_link:
            break
        next_url = next_link.get("url")
        if not next_url:
            break
        uri = next_url
    return pages


def check_rate_limit_get_reset_time(err: BaseException | None) -> int:
    """Return the unix time at which a rate limit resets, or 0 if ``err`` is not one."""
    if err is None:
        return 0
    if isinstance(err, RateLimitError):
        return err.reset_time
    text = str(err)
    if RATE_LIMIT_TEXT not in text:
        return 0
    match = _RATE_LIMIT_MARKER.search(text)
    if match is None:
        return 0
    return int(match.group(1))


def get_gap_time(target: int) -> int:
    return target - int(time.time())


def _raise_for_status(method: str, url: str, response: httpx.Response) -> None:
    status_code = response.status_code
    if 200 <= status_code < 300:
        return

    body = response.text
    if status_code in _RATE_LIMITED_STATUS_CODES:
        reset_time = _rate_limit_reset_time(response.headers)
        if reset_time is not None:
            log_warning(
                LOGGER,
                "git_rate_limited",
                method=method,
                url=_redact(url),
                reset_time=reset_time,
            )
            raise RateLimitError(reset_time, detail=f"code {status_code}")
    if status_code == 404:
        raise NotFoundError(f"404 [{method}] {_redact(url)}: {body}")
    raise HTTPRequestError(method, _redact(url), status_code, body)


def _rate_limit_reset_time(headers: httpx.Headers) -> int | None:
    remaining = headers.get("x-ratelimit-remaining", headers.get("ratelimit-remaining"))
    if remaining is not None and remaining.strip() == "0":
        reset = headers.get("x-ratelimit-reset", headers.get("ratelimit-reset"))
        if reset is not None and reset.strip().isdigit():
            return int(reset.strip())
    retry_after = headers.get("retry-after")
    if retry_after is not None and retry_after.strip().isdigit():
        return int(time.time()) + int(retry_after.strip())
    return None


def _with_page_size(url: str) -> str:
    parts = urlsplit(url)
    query = f"per_page={PAGE_SIZE}" if not parts.query else f"{parts.query}&per_page={PAGE_SIZE}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _redact(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
