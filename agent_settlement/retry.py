"""
retry.py — Bounded retry with exponential backoff.

Shared by the ledger and content clients. Each caller names the
exception types it considers transient and the typed error raised once
every attempt has failed.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Type

from .errors import SettlementError

logger = logging.getLogger("agent_settlement.retry")


def with_retries(
    fn: Callable[[], Any],
    *,
    retry_on: tuple[Type[BaseException], ...],
    error_cls: Type[SettlementError],
    retries: int = 3,
    backoff: float = 1.0,
    label: str = "",
    passthrough: tuple[Type[BaseException], ...] = (),
    is_transient: Callable[[BaseException], bool] = lambda exc: True,
):
    """
    Execute fn(), retrying up to `retries` times on transient errors.

    An exception matching `retry_on` is retried when is_transient(exc) is
    true; otherwise it is raised as error_cls immediately. Anything else
    propagates unchanged, as does anything matching `passthrough`. Raises
    error_cls if all attempts fail.
    """
    last_exc = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except passthrough:
            raise
        except retry_on as exc:
            if not is_transient(exc):
                raise error_cls(f"{label} failed: {exc}") from exc
            last_exc = exc
            wait = backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s: transient error on attempt %d/%d, retrying in %.1fs: %s",
                label, attempt, retries, wait, exc,
            )
            if attempt < retries:
                time.sleep(wait)
    raise error_cls(f"{label} failed after {retries} attempts: {last_exc}") from last_exc
