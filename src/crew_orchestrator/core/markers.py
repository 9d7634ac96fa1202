"""Parsing of the decision markers workers print at the end of their output.

A marker is a literal token on its own line within the last few lines of
the text. Missing markers resolve to fixed defaults (escalate on triage,
approve on QA) and are logged as warnings.
"""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TAIL_LINES = 5

NEEDS_ARCHITECT = "NEEDS_ARCHITECT"
SIMPLE_TASK = "SIMPLE_TASK"
QA_APPROVED = "QA_APPROVED"
QA_REJECTED = "QA_REJECTED"
DEV_NEEDS_HELP = "DEV_NEEDS_HELP"


@dataclass(frozen=True)
class TriageDecision:
    needs_architect: bool
    analysis: str = ""
    plan: str = ""
    marker_found: bool = True


@dataclass(frozen=True)
class QAVerdict:
    approved: bool
    reason: str = ""
    marker_found: bool = True


def _tail(text: str) -> list[tuple[int, str]]:
    """The last TAIL_LINES non-empty lines, as (line index, stripped line)."""
    lines = text.splitlines()
    indexed = [(i, line.strip()) for i, line in enumerate(lines) if line.strip()]
    return indexed[-TAIL_LINES:]


def _before(text: str, index: int) -> str:
    return "\n".join(text.splitlines()[:index]).strip()


def parse_triage_decision(text: str | None, warn: bool = True) -> TriageDecision:
    """Read a NEEDS_ARCHITECT or SIMPLE_TASK verdict.

    Without a marker the decision escalates, with ``marker_found`` unset.
    ``warn=False`` is for callers where a missing marker is routine.
    """
    text = text or ""
    for index, line in reversed(_tail(text)):
        if line == NEEDS_ARCHITECT:
            return TriageDecision(needs_architect=True, analysis=_before(text, index))
        if line == SIMPLE_TASK:
            return TriageDecision(needs_architect=False, plan=_before(text, index))

    if warn:
        logger.warning("No triage marker found in output, defaulting to %s", NEEDS_ARCHITECT)
    return TriageDecision(needs_architect=True, analysis=text.strip(), marker_found=False)


def parse_qa_verdict(text: str | None) -> QAVerdict:
    text = text or ""
    for _, line in reversed(_tail(text)):
        if line == QA_APPROVED:
            return QAVerdict(approved=True)
        if line == QA_REJECTED:
            return QAVerdict(approved=False, reason=text.strip())
        if line.startswith(QA_REJECTED + ":"):
            reason = line[len(QA_REJECTED) + 1:].strip()
            return QAVerdict(approved=False, reason=reason or text.strip())

    logger.warning("No QA verdict marker found in output, defaulting to approved")
    return QAVerdict(approved=True, marker_found=False)


def dev_needs_help(text: str | None) -> bool:
    return any(line == DEV_NEEDS_HELP for _, line in _tail(text or ""))
