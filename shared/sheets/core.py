"""Authorised gspread client plus retry and worksheet lookup for the sessions tab."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from typing import Callable, Optional, TypeVar

import gspread
from gspread.exceptions import APIError

from shared.config import get_gspread_credentials

log = logging.getLogger("pumpkin.sheets")

T = TypeVar("T")

# Quota and transient upstream errors from the Sheets API.
_TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
_WORKSHEET_TTL_S = 300.0

_lock = threading.Lock()
_client: Optional[gspread.Client] = None
_worksheets: dict[tuple[str, str], tuple[gspread.Worksheet, float]] = {}


def reset_cache() -> None:
    """Forget the client and worksheet handles, e.g. after rotating credentials."""

    global _client
    with _lock:
        _client = None
        _worksheets.clear()


def get_client() -> gspread.Client:
    global _client
    with _lock:
        if _client is None:
            raw = get_gspread_credentials()
            if not raw:
                raise RuntimeError("GSPREAD_CREDENTIALS is not set")
            try:
                info = json.loads(raw)
            except ValueError as exc:
                raise RuntimeError("GSPREAD_CREDENTIALS is not valid JSON") from exc
            _client = gspread.service_account_from_dict(info)
            log.debug("gspread client authorised")
        return _client


def _transient(exc: Exception) -> bool:
    if isinstance(exc, APIError):
        return getattr(exc.response, "status_code", None) in _TRANSIENT_STATUS
    return isinstance(exc, (ConnectionError, TimeoutError))


def with_backoff(call: Callable[[], T], *, attempts: int = 4, base_delay: float = 0.5) -> T:
    """Run ``call``, retrying transient Sheets failures with jittered exponential delay."""

    attempt = 1
    while True:
        try:
            return call()
        except Exception as exc:
            if attempt >= attempts or not _transient(exc):
                raise
            delay = base_delay * 2 ** (attempt - 1) + random.uniform(0, base_delay)
            log.warning("sheets call failed (attempt %d/%d), retrying in %.1fs: %s", attempt, attempts, delay, exc)
            time.sleep(delay)
            attempt += 1


def get_worksheet(sheet_id: str, tab: str) -> gspread.Worksheet:
    key = (sheet_id, tab)
    cached = _worksheets.get(key)
    if cached is not None and cached[1] > time.monotonic():
        return cached[0]
    worksheet = with_backoff(lambda: get_client().open_by_key(sheet_id).worksheet(tab))
    _worksheets[key] = (worksheet, time.monotonic() + _WORKSHEET_TTL_S)
    return worksheet
