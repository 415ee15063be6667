"""
handlers.py — Pluggable judgment procedures for validation.

A handler turns (deliverable, context) into a Verdict within a bounded time.

ExternalHandler runs an executable:
  - deliverable bytes on stdin
  - context as SETTLEMENT_* environment variables
  - exit status 0 approves, 1 rejects; anything else is a crash
  - last stdout line is JSON: {"score": 0-100, "reason": "..."}
  - on timeout the child is killed and HandlerTimeout is raised

ManualHandler asks an operator on a pair of text streams.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from typing import Optional, TextIO

from .errors import HandlerCrashed, HandlerTimeout
from .models import HandlerContext, Verdict

logger = logging.getLogger("agent_settlement.handlers")

EXIT_APPROVE = 0
EXIT_REJECT = 1
MAX_PREVIEW_CHARS = 5000


class JudgmentHandler:
    """Base class. Subclasses implement judge()."""

    name = "handler"

    def judge(self, deliverable: bytes, context: HandlerContext) -> Verdict:
        raise NotImplementedError


def handler_env(context: HandlerContext, base: Optional[dict] = None) -> dict:
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "SETTLEMENT_REQUEST_ID": str(context.request_id),
            "SETTLEMENT_TASK_CATEGORY": context.category,
            "SETTLEMENT_SELLER": context.seller,
            "SETTLEMENT_DEADLINE": str(context.deadline),
            "SETTLEMENT_PRICE": str(context.price),
        }
    )
    return env


def parse_handler_output(stdout: str) -> tuple[int, str]:
    """
    Extract (score, reason) from the last non-empty stdout line.

    Raises:
        HandlerCrashed: no JSON line, or score outside 0-100.
    """
    lines = [line for line in stdout.splitlines() if line.strip()]
    if not lines:
        raise HandlerCrashed("handler produced no output")
    try:
        result = json.loads(lines[-1])
    except json.JSONDecodeError as exc:
        raise HandlerCrashed(f"handler output is not JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise HandlerCrashed("handler output must be a JSON object")
    score = result.get("score")
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
        raise HandlerCrashed(f"handler score must be an integer 0-100, got {score!r}")
    reason = result.get("reason", "")
    if not isinstance(reason, str):
        raise HandlerCrashed("handler reason must be text")
    return score, reason


class ExternalHandler(JudgmentHandler):
    """Runs an external executable as the judgment procedure."""

    name = "external"

    def __init__(self, command, timeout_seconds: float = 60, env: Optional[dict] = None):
        self.command = [command] if isinstance(command, str) else list(command)
        self.timeout_seconds = timeout_seconds
        self._base_env = env

    def judge(self, deliverable: bytes, context: HandlerContext) -> Verdict:
        logger.info(
            "Running handler %s for request %s (timeout %ss)",
            self.command[0], context.request_id, self.timeout_seconds,
        )
        try:
            proc = subprocess.run(
                self.command,
                input=deliverable,
                env=handler_env(context, self._base_env),
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise HandlerTimeout(
                f"handler exceeded {self.timeout_seconds}s for request {context.request_id}"
            ) from exc
        except OSError as exc:
            raise HandlerCrashed(f"handler could not be started: {exc}") from exc

        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode not in (EXIT_APPROVE, EXIT_REJECT):
            raise HandlerCrashed(f"handler exited with code {proc.returncode}: {stderr[:500]}")
        if stderr:
            logger.debug("handler stderr: %s", stderr[:500])

        score, reason = parse_handler_output(proc.stdout.decode("utf-8", errors="replace"))
        return Verdict(passed=proc.returncode == EXIT_APPROVE, score=score, reason=reason)


class ManualHandler(JudgmentHandler):
    """
    Operator review on text streams.

    The prompt goes to `writer` (stderr by default) and answers are read
    from `reader` (stdin by default), so tests can pass StringIO objects.
    """

    name = "manual"

    def __init__(self, reader: Optional[TextIO] = None, writer: Optional[TextIO] = None):
        self._reader = reader or sys.stdin
        self._writer = writer or sys.stderr

    def _ask(self, prompt: str) -> str:
        self._writer.write(prompt)
        self._writer.flush()
        line = self._reader.readline()
        if not line:
            raise HandlerCrashed("operator input closed before a verdict was given")
        return line.strip()

    def judge(self, deliverable: bytes, context: HandlerContext) -> Verdict:
        out = self._writer
        out.write(f"\nrequest={context.request_id} category={context.category} "
                  f"seller={context.seller} price={context.price}\n")
        try:
            text = deliverable.decode("utf-8")
            out.write(text[:MAX_PREVIEW_CHARS] + "\n")
            if len(text) > MAX_PREVIEW_CHARS:
                out.write(f"... ({len(text)} characters total)\n")
        except UnicodeDecodeError:
            out.write(f"[binary content, {len(deliverable)} bytes]\n")

        passed = self._ask("Approve? (y/n): ").lower().startswith("y")
        default_score = 80 if passed else 20
        raw_score = self._ask(f"Score (0-100, default {default_score}): ")
        try:
            score = int(raw_score) if raw_score else default_score
        except ValueError:
            score = default_score
        if not 0 <= score <= 100:
            score = default_score
        reason = self._ask("Reason (optional): ") or ("approved" if passed else "rejected")
        return Verdict(passed=passed, score=score, reason=reason)
