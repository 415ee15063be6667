"""
daemon.py — Settlement loop.

Each iteration:
  1. validation poll (attest pending responses addressed to us)
  2. ledger event sync into the local request cache
  3. auto-claim of our Validated seller requests
  4. optional auto-expire of our past-deadline buyer requests

A shutdown signal is only honoured between iterations, so an in-flight
ledger submission always finishes its confirmation wait. Every error
except StorageCorrupted is scoped to the step that raised it.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Callable, Optional

from .config import SettlementConfig
from .errors import SettlementError, StorageCorrupted
from .lifecycle import RequestEngine
from .models import LoopIteration, RequestStatus, Role
from .store import LocalStore
from .validation import ValidationOrchestrator

logger = logging.getLogger("agent_settlement.daemon")


class SettlementLoop:
    """
    Usage:
        loop = SettlementLoop(config, engine, store, orchestrator)
        loop.install_signal_handlers()
        loop.run()
    """

    def __init__(
        self,
        config: SettlementConfig,
        engine: RequestEngine,
        store: LocalStore,
        orchestrator: Optional[ValidationOrchestrator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._engine = engine
        self._store = store
        self._orchestrator = orchestrator
        self._clock = clock
        self._stop = threading.Event()
        self.iterations = 0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Request shutdown after the current iteration."""
        if not self._stop.is_set():
            logger.info("Shutdown requested; finishing current iteration")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to stop(). Main thread only."""
        def _handle(signum, _frame):
            logger.info("Received signal %s", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def run(self, max_iterations: Optional[int] = None) -> None:
        logger.info(
            "Settlement loop started: interval=%ss auto_claim=%s auto_expire=%s",
            self._config.poll_interval_seconds, self._config.auto_claim, self._config.auto_expire,
        )
        while not self._stop.is_set():
            self.run_once()
            if max_iterations is not None and self.iterations >= max_iterations:
                break
            self._stop.wait(self._config.poll_interval_seconds)
        logger.info("Settlement loop stopped after %d iterations", self.iterations)

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    def run_once(self) -> LoopIteration:
        result = LoopIteration()
        self.iterations += 1

        if self._orchestrator is not None:
            self._step(result, "validation", self._poll_validations, result)
        self._step(result, "sync", self._sync, result)
        if self._config.auto_claim:
            self._claim_validated(result)
        if self._config.auto_expire:
            self._expire_overdue(result)

        logger.debug(
            "Iteration %d: attested=%d events=%d claimed=%d expired=%d errors=%d",
            self.iterations, len(result.validations.submitted), result.events_applied,
            len(result.claimed), len(result.expired), len(result.errors),
        )
        return result

    def _step(self, result: LoopIteration, label: str, fn, *args) -> None:
        try:
            fn(*args)
        except StorageCorrupted:
            logger.critical("Local state is corrupted; stopping")
            raise
        except SettlementError as exc:
            logger.warning("%s step failed: %s", label, exc)
            result.errors.append(exc)

    def _poll_validations(self, result: LoopIteration) -> None:
        result.validations = self._orchestrator.poll_once()

    def _sync(self, result: LoopIteration) -> None:
        result.events_applied = self._engine.sync()

    def _claim_validated(self, result: LoopIteration) -> None:
        for local in self._store.requests(status=RequestStatus.VALIDATED, role=Role.SELLER):
            self._step(result, f"claim {local.request_id}", self._claim, result, local.request_id)

    def _claim(self, result: LoopIteration, request_id: int) -> None:
        result.claimed.append(self._engine.claim(request_id))

    def _expire_overdue(self, result: LoopIteration) -> None:
        now = int(self._clock())
        for local in self._store.requests(role=Role.BUYER):
            if local.status.is_terminal or local.deadline > now:
                continue
            self._step(result, f"expire {local.request_id}", self._expire, result, local.request_id)

    def _expire(self, result: LoopIteration, request_id: int) -> None:
        self._engine.expire(request_id)
        result.expired.append(request_id)
