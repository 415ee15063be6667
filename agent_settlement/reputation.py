"""
reputation.py — Reputation derived from attestation history.

A seller's score is the pass ratio of attestations recorded against its
responses, as a percentage. Everything is recomputed from ledger events.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .ledger import EventFilter, LedgerClient
from .models import ReputationScore

logger = logging.getLogger("agent_settlement.reputation")

TIERS = ((95.0, "Excellent"), (80.0, "Good"), (60.0, "Fair"))


def compute_reputation(agent_id: int, outcomes: Iterable[bool], total_earnings: int = 0) -> ReputationScore:
    results = list(outcomes)
    passed = sum(1 for r in results if r)
    failed = len(results) - passed
    score = (passed / len(results)) * 100.0 if passed else 0.0
    return ReputationScore(
        agent_id=agent_id,
        passed=passed,
        failed=failed,
        total_earnings=total_earnings,
        score=score,
    )


def reputation_tier(score: ReputationScore) -> str:
    if score.passed == 0 and score.failed == 0:
        return "Unrated"
    for threshold, name in TIERS:
        if score.score >= threshold:
            return name
    return "New"


def reputation_from_ledger(ledger: LedgerClient, agent_id: int, from_block: int = 0) -> ReputationScore:
    """
    Replay responses, attestations and claims for one seller.

    Only the latest attestation per request counts.
    """
    responses: set[int] = set()
    verdicts: dict[int, bool] = {}
    earnings = 0
    for event in ledger.query_events(
        EventFilter(
            kinds=("ResponseSubmitted", "AttestationRecorded", "RequestClaimed"),
            from_block=from_block,
        )
    ):
        if event.kind == "ResponseSubmitted":
            if event.args.get("sellerAgentId") == agent_id:
                responses.add(event.request_id)
        elif event.request_id in responses:
            if event.kind == "AttestationRecorded":
                verdicts[event.request_id] = bool(event.args.get("passed"))
            else:
                earnings += event.args.get("sellerAmount", 0)
    score = compute_reputation(agent_id, verdicts.values(), earnings)
    logger.debug("Reputation for agent %s: %.1f over %d attestations", agent_id, score.score, len(verdicts))
    return score
