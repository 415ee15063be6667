"""
lifecycle.py — Request lifecycle engine.

Mirrors and drives the request registry's state machine:

    Open -> Responded -> Validated -> Claimed
    Open -> Cancelled
    Open | Responded | Validated -> Expired

The local LocalRequest records are a read-through cache. Ledger events are
authoritative and may be observed more than once or after later events;
apply_event() is therefore idempotent and never moves a record backwards.
When an event lands several states ahead, the record is stepped through
each intermediate edge so no path ever skips a state.

Each request id is processed under its own lock, so at most one operation
touches a given request at a time within the process.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from . import commitment, encryption
from .config import SettlementConfig
from .errors import (
    AlreadyClaimed,
    ContentUnavailable,
    DecryptionFailed,
    Expired,
    InsufficientFunds,
    InvalidTransition,
    NotFound,
    SettlementError,
    StorageCorrupted,
    SubmissionFailed,
)
from .ledger import REQUEST_EVENTS, EventFilter, LedgerCall, LedgerClient
from .models import (
    EarningsRecord,
    LedgerEvent,
    LocalRequest,
    Request,
    RequestSpec,
    RequestStatus,
    Response,
    Role,
    SettlementReceipt,
    SubmissionReceipt,
)
from .store import LocalStore

logger = logging.getLogger("agent_settlement.lifecycle")

S = RequestStatus

TRANSITIONS: dict[RequestStatus, frozenset] = {
    S.OPEN: frozenset({S.RESPONDED, S.CANCELLED, S.EXPIRED}),
    S.RESPONDED: frozenset({S.VALIDATED, S.EXPIRED}),
    S.VALIDATED: frozenset({S.CLAIMED, S.EXPIRED}),
    S.CLAIMED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

_MAIN_PATH = (S.OPEN, S.RESPONDED, S.VALIDATED, S.CLAIMED)
_RANK = {S.OPEN: 0, S.RESPONDED: 1, S.VALIDATED: 2, S.CLAIMED: 3, S.CANCELLED: 3, S.EXPIRED: 3}

EVENT_STATUS = {
    "RequestCreated": S.OPEN,
    "ResponseSubmitted": S.RESPONDED,
    "RequestValidated": S.VALIDATED,
    "RequestClaimed": S.CLAIMED,
    "RequestCancelled": S.CANCELLED,
    "RequestExpired": S.EXPIRED,
}

EVENTS_CURSOR = "events"


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in TRANSITIONS[current]


def transition_path(request_id: int, current: RequestStatus, target: RequestStatus) -> list:
    """
    Edges needed to bring current up to target.

    Returns [] when target is current or already behind it (a replayed
    event). Raises InvalidTransition when target is unreachable.
    """
    if target == current:
        return []
    if target in _MAIN_PATH and _RANK[target] < _RANK[current]:
        return []
    if can_transition(current, target):
        return [target]
    if current in _MAIN_PATH and target in _MAIN_PATH:
        return list(_MAIN_PATH[_MAIN_PATH.index(current) + 1:_MAIN_PATH.index(target) + 1])
    if target == S.EXPIRED and current in (S.OPEN, S.RESPONDED, S.VALIDATED):
        return [target]
    raise InvalidTransition(request_id, current.value, target.value)


class RequestEngine:
    """
    Drives create / respond / claim / cancel / expire through the ledger
    client and keeps the local projection in step with ledger events.
    """

    def __init__(
        self,
        config: SettlementConfig,
        ledger: LedgerClient,
        store: LocalStore,
        identity,
        agent_id: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        content=None,
    ):
        self._config = config
        self._ledger = ledger
        self._store = store
        self._identity = identity
        self._agent_id = agent_id
        self._clock = clock
        self._content = content
        self._locks: dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def agent_id(self) -> int:
        """Identity token id of this agent, resolved once."""
        if self._agent_id is None:
            registration = self._store.load_registration()
            if registration is not None:
                self._agent_id = registration.agent_id
            else:
                self._agent_id = self._ledger.agent_of(self._identity.address)
            if not self._agent_id:
                raise NotFound(f"{self._identity.address} has no identity token")
        return self._agent_id

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def request_lock(self, request_id: int) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(request_id, threading.RLock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, local: LocalRequest, target: RequestStatus) -> None:
        """
        Apply one edge the ledger has already confirmed.

        Deadlines are checked before submitting. Once the ledger accepted
        the call its outcome stands, even if the deadline passed while
        waiting for confirmation.
        """
        if not can_transition(local.status, target):
            raise InvalidTransition(local.request_id, local.status.value, target.value)
        logger.info(
            "Request %s: %s -> %s", local.request_id, local.status.value, target.value,
        )
        local.status = target

    # ------------------------------------------------------------------
    # Buyer operations
    # ------------------------------------------------------------------

    def create(self, spec: RequestSpec) -> int:
        """
        Lock the price via an allowance, then create the request.

        If the create call fails after the allowance was granted, the
        allowance is revoked and a combined SubmissionFailed is raised.

        Returns:
            The ledger-assigned request id.
        """
        if spec.price <= 0:
            raise ValueError("price must be a positive number of minor units")
        if spec.deadline <= self._now():
            raise Expired(f"deadline {spec.deadline} is not in the future")

        self._ledger.submit(LedgerCall.approve_allowance(spec.price))
        try:
            receipt = self._ledger.submit(LedgerCall.create_request(spec))
        except SettlementError as exc:
            self._revoke_allowance()
            if isinstance(exc, InsufficientFunds):
                raise
            raise SubmissionFailed(
                f"create_request failed after allowance was granted: {exc}",
                code=getattr(exc, "code", "exhausted"),
                attempts=getattr(exc, "attempts", 0),
            ) from exc

        event = receipt.first_event("RequestCreated")
        if event is None:
            raise SubmissionFailed("create_request confirmed without RequestCreated", code="missing_event")

        now = self._now()
        local = LocalRequest(
            request_id=event.request_id,
            role=Role.BUYER,
            status=S.OPEN,
            payload_locator=spec.payload_locator,
            price=spec.price,
            deadline=spec.deadline,
            buyer=self.agent_id,
            target=spec.target,
            category=spec.category,
            last_event=event.position,
            created_at=now,
        )
        with self.request_lock(local.request_id):
            self._store.save_request(local)
        logger.info("Request created: id=%s price=%d deadline=%d", local.request_id, spec.price, spec.deadline)
        return local.request_id

    def _revoke_allowance(self) -> None:
        try:
            self._ledger.submit(LedgerCall.approve_allowance(0))
        except SettlementError as exc:
            logger.error("Allowance revoke after failed create did not confirm: %s", exc)

    def cancel(self, request_id: int) -> None:
        """Cancel an open request. Only the buyer may cancel."""
        with self.request_lock(request_id):
            local = self._store.load_request(request_id)
            if local.role != Role.BUYER:
                raise InvalidTransition(request_id, local.status.value, S.CANCELLED.value, "caller is not the buyer")
            if not can_transition(local.status, S.CANCELLED):
                raise InvalidTransition(request_id, local.status.value, S.CANCELLED.value)
            receipt = self._ledger.submit(LedgerCall.cancel(request_id))
            self._transition(local, S.CANCELLED)
            local.last_event = _position(receipt, "RequestCancelled", local.last_event)
            self._store.save_request(local)

    # ------------------------------------------------------------------
    # Seller operations
    # ------------------------------------------------------------------

    def respond(self, request_id: int, payload_locator: str) -> Response:
        """
        Commit to a deliverable.

        A fresh secret is generated and durably stored before its digest
        is broadcast with submitResponse.
        """
        with self.request_lock(request_id):
            local = self._store.find_request(request_id)
            if local is None:
                local = self._local_from_ledger(self._ledger.get_request(request_id), Role.SELLER)
            if local.role == Role.BUYER:
                raise InvalidTransition(request_id, local.status.value, S.RESPONDED.value, "buyer cannot respond")
            if not can_transition(local.status, S.RESPONDED):
                raise InvalidTransition(request_id, local.status.value, S.RESPONDED.value)
            if self._now() >= local.deadline:
                raise Expired(f"request {request_id} deadline {local.deadline} has passed")
            if local.target and local.target != self.agent_id:
                raise InvalidTransition(
                    request_id, local.status.value, S.RESPONDED.value, "request targets another seller"
                )

            secret, secret_digest = commitment.generate_commitment()
            self._store.put_secret(request_id, secret)
            local.role = Role.SELLER
            local.response_locator = payload_locator
            local.commitment = commitment.to_hex(secret_digest)
            self._store.save_request(local)

            try:
                receipt = self._ledger.submit(
                    LedgerCall.submit_response(request_id, payload_locator, secret_digest)
                )
            except (InsufficientFunds, SubmissionFailed) as exc:
                # Nothing reached the ledger for a pre-broadcast rejection, so
                # the secret can go. Otherwise it must be kept.
                if isinstance(exc, InsufficientFunds) or exc.code in ("reverted", "rejected"):
                    self._store.delete_secret(request_id)
                raise

            self._transition(local, S.RESPONDED)
            local.last_event = _position(receipt, "ResponseSubmitted", local.last_event)
            self._store.save_request(local)
            logger.info("Response submitted: request=%s digest=%s...", request_id, local.commitment[:12])
            return Response(
                request_id=request_id,
                seller=self.agent_id,
                seller_address=self._identity.address,
                locator=payload_locator,
                commitment=local.commitment,
            )

    def claim(self, request_id: int) -> SettlementReceipt:
        """
        Reveal the stored secret and collect payment.

        The secret is deleted only after the claim is confirmed and the
        earnings record is written.
        """
        with self.request_lock(request_id):
            local = self._store.load_request(request_id)
            if local.status == S.CLAIMED:
                raise AlreadyClaimed(f"request {request_id} is already claimed")
            if local.role != Role.SELLER:
                raise InvalidTransition(request_id, local.status.value, S.CLAIMED.value, "only the seller can claim")
            if local.status != S.VALIDATED:
                raise InvalidTransition(request_id, local.status.value, S.CLAIMED.value)
            if self._now() >= local.deadline:
                raise Expired(f"request {request_id} deadline {local.deadline} has passed")

            try:
                secret = self._store.get_secret(request_id)
            except NotFound as exc:
                raise StorageCorrupted(f"secrets/{request_id}", "secret missing for validated response") from exc
            if local.commitment and not commitment.verify(secret, commitment.from_hex(local.commitment)):
                raise StorageCorrupted(f"secrets/{request_id}", "stored secret does not match commitment")

            receipt = self._ledger.submit(LedgerCall.claim(request_id, secret))

            event = receipt.first_event("RequestClaimed")
            if event is not None:
                seller_amount = event.args["sellerAmount"]
                validator_amount = event.args["validatorAmount"]
            else:
                seller_amount, validator_amount = commitment.split_fee(local.price, self._config.validator_fee_bps)

            self._transition(local, S.CLAIMED)
            local.seller_amount = seller_amount
            local.validator_amount = validator_amount
            local.last_event = event.position if event else local.last_event
            self._store.save_request(local)
            self._store.append_earnings(
                EarningsRecord(request_id=request_id, role=Role.SELLER, amount=seller_amount, tx_hash=receipt.tx_hash)
            )
            self._store.delete_secret(request_id)
            logger.info("Request %s claimed: seller=%d validator=%d", request_id, seller_amount, validator_amount)
            return SettlementReceipt(
                request_id=request_id,
                tx_hash=receipt.tx_hash,
                seller_amount=seller_amount,
                validator_amount=validator_amount,
                settled_at=self._now(),
            )

    # ------------------------------------------------------------------
    # Any caller
    # ------------------------------------------------------------------

    def expire(self, request_id: int) -> None:
        """Trigger expiry of a request whose deadline has passed."""
        with self.request_lock(request_id):
            local = self._store.find_request(request_id)
            if local is None:
                request = self._ledger.get_request(request_id)
                status, deadline = request.status, request.deadline
            else:
                status, deadline = local.status, local.deadline
            if not can_transition(status, S.EXPIRED):
                raise InvalidTransition(request_id, status.value, S.EXPIRED.value)
            if self._now() < deadline:
                raise InvalidTransition(request_id, status.value, S.EXPIRED.value, "deadline not reached")

            receipt = self._ledger.submit(LedgerCall.expire(request_id))
            if local is not None:
                self._transition(local, S.EXPIRED)
                local.last_event = _position(receipt, "RequestExpired", local.last_event)
                self._store.save_request(local)
                self._store.delete_secret(request_id)

    def withdraw(self, destination: str, amount: int) -> SubmissionReceipt:
        """Transfer earned tokens out of this identity's address."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        receipt = self._ledger.submit(LedgerCall.withdraw(destination, amount))
        logger.info("Withdrawal confirmed: amount=%d tx=%s", amount, receipt.tx_hash)
        return receipt

    # ------------------------------------------------------------------
    # Event replay
    # ------------------------------------------------------------------

    def apply_event(self, event: LedgerEvent) -> Optional[LocalRequest]:
        """
        Fold one ledger event into the local projection.

        Returns the updated record, or None when the event concerns a
        request this identity does not participate in. Re-applying an
        event, or applying one older than the record, changes nothing.
        """
        target = EVENT_STATUS.get(event.kind)
        if target is None or event.request_id is None:
            return None

        with self.request_lock(event.request_id):
            local = self._store.find_request(event.request_id)
            if local is None:
                local = self._adopt(event)
                if local is None:
                    return None
            if local.last_event is not None and event.position <= tuple(local.last_event):
                return local

            steps = transition_path(local.request_id, local.status, target)
            for step in steps:
                logger.info(
                    "Request %s: %s -> %s (event %s)",
                    local.request_id, local.status.value, step.value, event.kind,
                )
                local.status = step

            if event.kind == "ResponseSubmitted" and local.response_locator is None:
                local.response_locator = event.args.get("responseCid")
                local.commitment = event.args.get("secretHash")
            if event.kind == "RequestClaimed":
                local.seller_amount = event.args.get("sellerAmount", 0)
                local.validator_amount = event.args.get("validatorAmount", 0)
                self._record_claim_earnings(local, event)
            if local.status in (S.EXPIRED, S.CANCELLED) or (
                local.status == S.CLAIMED and local.role == Role.SELLER
            ):
                self._store.delete_secret(local.request_id)

            local.last_event = event.position
            self._store.save_request(local)
            return local

    def _adopt(self, event: LedgerEvent) -> Optional[LocalRequest]:
        """Start tracking a request first seen via its creation event."""
        if event.kind != "RequestCreated":
            return None
        args = event.args
        if args.get("buyerAgentId") == self.agent_id:
            role = Role.BUYER
        elif args.get("targetAgentId") and args.get("targetAgentId") == self.agent_id:
            role = Role.SELLER
        else:
            return None
        return LocalRequest(
            request_id=event.request_id,
            role=role,
            status=S.OPEN,
            payload_locator=args.get("payloadCid", ""),
            price=args.get("price", 0),
            deadline=args.get("deadline", 0),
            buyer=args.get("buyerAgentId", 0),
            target=args.get("targetAgentId") or None,
            created_at=self._now(),
        )

    def _record_claim_earnings(self, local: LocalRequest, event: LedgerEvent) -> None:
        if local.role == Role.SELLER:
            amount = local.seller_amount
        elif local.role == Role.VALIDATOR:
            amount = local.validator_amount
        else:
            return
        self._store.append_earnings(
            EarningsRecord(request_id=local.request_id, role=local.role, amount=amount, tx_hash=event.tx_hash)
        )

    def sync(self) -> int:
        """
        Replay request events since the stored cursor.

        Returns the number of events that touched a tracked request.
        """
        cursor = int(self._store.get_cursor(EVENTS_CURSOR, self._config.start_block))
        head = self._ledger.block_number()
        if cursor > head:
            return 0
        applied = 0
        for event in self._ledger.query_events(
            EventFilter(kinds=REQUEST_EVENTS, from_block=cursor, to_block=head)
        ):
            try:
                if self.apply_event(event) is not None:
                    applied += 1
            except InvalidTransition as exc:
                logger.warning("Ignoring conflicting event %s: %s", event.kind, exc)
        self._store.set_cursor(EVENTS_CURSOR, head + 1)
        logger.debug("sync: blocks %d-%d, %d events applied", cursor, head, applied)
        return applied

    def track_validation(self, request: Request, response: Response) -> LocalRequest:
        """Start (or resume) tracking a request this identity validates."""
        with self.request_lock(request.request_id):
            local = self._store.find_request(request.request_id)
            if local is None:
                local = self._local_from_ledger(request, Role.VALIDATOR)
                local.response_locator = response.locator
                local.commitment = response.commitment
                local.counterpart = response.seller_address
                self._store.save_request(local)
            return local

    # ------------------------------------------------------------------
    # Discovery and reporting
    # ------------------------------------------------------------------

    def search_open_requests(
        self,
        capability: Optional[str] = None,
        from_block: Optional[int] = None,
    ) -> list[Request]:
        """
        Requests still open and before their deadline, oldest first.

        With a capability, each payload envelope is fetched and only
        requests whose category matches are kept; unreadable payloads
        are skipped.
        """
        found = self._replay_open(from_block)
        if capability is None:
            return found
        if self._content is None:
            raise ValueError("searching by capability needs a content client")
        matched = []
        for request in found:
            try:
                envelope = encryption.parse_envelope(self._content.get(request.payload_locator))
            except (ContentUnavailable, DecryptionFailed) as exc:
                logger.debug("search: skipping request %s: %s", request.request_id, exc)
                continue
            if envelope.get("category") == capability:
                matched.append(request)
        return matched

    def _replay_open(self, from_block: Optional[int]) -> list[Request]:
        start = self._config.start_block if from_block is None else from_block
        found: dict[int, Request] = {}
        for event in self._ledger.query_events(EventFilter(kinds=tuple(EVENT_STATUS), from_block=start)):
            if event.kind == "RequestCreated":
                args = event.args
                found[event.request_id] = Request(
                    request_id=event.request_id,
                    buyer=args["buyerAgentId"],
                    buyer_address="",
                    target=args["targetAgentId"] or None,
                    payload_locator=args["payloadCid"],
                    price=args["price"],
                    deadline=args["deadline"],
                    status=S.OPEN,
                )
            else:
                found.pop(event.request_id, None)
        now = self._now()
        return [r for r in found.values() if r.deadline > now]

    def summary(self) -> dict:
        """Counts per status and earnings totals per role."""
        counts = {status.value: 0 for status in RequestStatus}
        for local in self._store.requests():
            counts[local.status.value] += 1
        totals = {role.value: 0 for role in (Role.SELLER, Role.VALIDATOR)}
        for record in self._store.earnings():
            totals[record.role.value] = totals.get(record.role.value, 0) + record.amount
        return {"requests": counts, "earnings": totals}

    def _local_from_ledger(self, request: Request, role: Role) -> LocalRequest:
        return LocalRequest(
            request_id=request.request_id,
            role=role,
            status=request.status,
            payload_locator=request.payload_locator,
            price=request.price,
            deadline=request.deadline,
            buyer=request.buyer,
            target=request.target,
            counterpart=request.buyer_address,
            created_at=self._now(),
        )


def _position(receipt, kind: str, fallback):
    event = receipt.first_event(kind)
    return event.position if event is not None else fallback
