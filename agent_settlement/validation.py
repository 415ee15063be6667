"""
validation.py — Validation orchestrator.

One poll cycle:
  1. Query ResponseSubmitted events since the stored block cursor, plus any
     request ids left on the retry list by an earlier cycle
  2. Skip requests already attested, no longer Responded, or past deadline
  3. Fetch the response envelope; keep it only if it is addressed to this
     identity and its category passes the capability filter
  4. Decrypt and run the judgment handler
  5. Submit requestValidation, then submitValidation. The second call is
     never sent before the first is confirmed
  6. Persist the attestation

Handler failures and transient transport errors put the request on the
retry list; nothing is attested for it in the same cycle.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Callable, Optional

from . import encryption
from .config import SettlementConfig
from .content import ContentClient
from .errors import (
    ContentUnavailable,
    DecryptionFailed,
    HandlerCrashed,
    HandlerTimeout,
    NetworkError,
    SettlementError,
    StorageCorrupted,
    SubmissionFailed,
)
from .handlers import JudgmentHandler
from .ledger import EventFilter, LedgerCall, LedgerClient
from .lifecycle import RequestEngine
from .models import (
    Attestation,
    HandlerContext,
    RequestStatus,
    ValidationOutcome,
    ValidationReport,
    Verdict,
)
from .store import LocalStore

logger = logging.getLogger("agent_settlement.validation")

VALIDATION_CURSOR = "validation"
RETRY_KEY = "validation:retry"
PROGRESS_KEY = "validation:requested"

_RETRIABLE = (HandlerTimeout, HandlerCrashed, ContentUnavailable, NetworkError)


class NotApplicable(Exception):
    """Internal signal: the request is not this validator's to judge."""


class ValidationOrchestrator:
    """Finds pending validations, judges them, and attests on the ledger."""

    def __init__(
        self,
        config: SettlementConfig,
        ledger: LedgerClient,
        content: ContentClient,
        store: LocalStore,
        identity,
        handler: JudgmentHandler,
        engine: RequestEngine,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._ledger = ledger
        self._content = content
        self._store = store
        self._identity = identity
        self._handler = handler
        self._engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    def poll_once(self) -> ValidationReport:
        report = ValidationReport()
        retry = list(self._store.get_cursor(RETRY_KEY, []))
        candidates = list(dict.fromkeys(retry))

        cursor = int(self._store.get_cursor(VALIDATION_CURSOR, self._config.start_block))
        head = self._ledger.block_number()
        if cursor <= head:
            for event in self._ledger.query_events(
                EventFilter(kinds=("ResponseSubmitted",), from_block=cursor, to_block=head)
            ):
                if event.request_id not in candidates:
                    candidates.append(event.request_id)

        still_pending = []
        for request_id in candidates:
            outcome = self._process(request_id)
            if outcome is None:
                continue
            report.outcomes.append(outcome)
            if outcome.error is not None and is_retriable(outcome.error):
                still_pending.append(request_id)

        self._store.set_cursor(RETRY_KEY, still_pending)
        if cursor <= head:
            self._store.set_cursor(VALIDATION_CURSOR, head + 1)
        if report.outcomes:
            logger.info(
                "Validation poll: %d attested, %d errors, %d pending retry",
                len(report.submitted), len(report.errors), len(still_pending),
            )
        return report

    def _process(self, request_id: int) -> Optional[ValidationOutcome]:
        try:
            attestation = self.validate(request_id)
        except NotApplicable as exc:
            logger.debug("Request %s skipped: %s", request_id, exc)
            return None
        except StorageCorrupted:
            raise
        except SettlementError as exc:
            logger.warning("Validation of request %s failed: %s", request_id, exc)
            return ValidationOutcome(request_id=request_id, error=exc)
        if attestation is None:
            return ValidationOutcome(request_id=request_id, skipped=True)
        return ValidationOutcome(request_id=request_id, attestation=attestation)

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------

    def validate(self, request_id: int) -> Optional[Attestation]:
        """
        Judge one request and attest the verdict.

        Returns None if this identity already attested the request.
        Raises NotApplicable if the request is not ours to judge.
        """
        if self._store.has_attestation(request_id):
            return None

        request = self._ledger.get_request(request_id)
        if request.status != RequestStatus.RESPONDED:
            raise NotApplicable(f"status is {request.status.value}")
        if int(self._clock()) >= request.deadline:
            raise NotApplicable("deadline has passed")

        response = self._ledger.get_response(request_id)
        try:
            envelope = encryption.parse_envelope(self._content.get(response.locator))
        except DecryptionFailed as exc:
            raise NotApplicable(f"response is not a readable envelope: {exc}") from exc
        if self._identity.public_key_hex not in encryption.envelope_recipients(envelope):
            raise NotApplicable("deliverable is not addressed to this identity")
        category = envelope.get("category", "")
        if self._config.capability_filter and category not in self._config.capability_filter:
            raise NotApplicable(f"category {category!r} outside capability filter")

        recorded = self._store.get_cursor(PROGRESS_KEY, {}).get(str(request_id))
        if recorded is not None:
            # requestValidation already confirmed; attest the verdict it was sent for
            verdict = Verdict(**recorded)
            logger.info("Resuming attestation of request %s with recorded verdict", request_id)
        else:
            deliverable = self._identity.open_envelope(envelope)
            context = HandlerContext(
                request_id=request_id,
                category=category,
                seller=response.seller_address,
                deadline=request.deadline,
                price=request.price,
            )
            verdict = self._handler.judge(deliverable, context)
            logger.info(
                "Verdict for request %s: passed=%s score=%d", request_id, verdict.passed, verdict.score,
            )

        local = self._engine.track_validation(request, response)
        local.category = category
        with self._engine.request_lock(request_id):
            self._store.save_request(local)
            self._attest(request_id, verdict)

        attestation = Attestation(
            request_id=request_id,
            validator=self._engine.agent_id,
            passed=verdict.passed,
            score=verdict.score,
            reason=verdict.reason,
            created_at=int(self._clock()),
        )
        self._store.save_attestation(attestation)
        return attestation

    def _attest(self, request_id: int, verdict: Verdict) -> None:
        """
        Submit requestValidation then submitValidation. The verdict is
        recorded once the first call confirms so a resumed attempt sends
        the same verdict.
        """
        requested = self._store.get_cursor(PROGRESS_KEY, {})
        key = str(request_id)
        if key not in requested:
            self._ledger.submit(LedgerCall.request_validation(request_id))
            requested[key] = asdict(verdict)
            self._store.set_cursor(PROGRESS_KEY, requested)
        self._ledger.submit(LedgerCall.submit_validation(request_id, verdict.passed, self._engine.agent_id))
        requested.pop(key, None)
        self._store.set_cursor(PROGRESS_KEY, requested)


def is_retriable(error: Exception) -> bool:
    if isinstance(error, SubmissionFailed):
        return error.code != "reverted"
    return isinstance(error, _RETRIABLE)
