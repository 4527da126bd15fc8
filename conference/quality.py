"""Structural contracts on agent output: contribution tag, references, Decision Board.

Also detects near-duplicate responses that repeat prior points without
adding anything new.
"""

import re
from dataclasses import dataclass
from enum import Enum

from conference.models import AgentRole, Phase
from conference.phases import requires_decision_board


class ContributionType(str, Enum):
    ADD_EVIDENCE = "add_evidence"
    CHALLENGE_ASSUMPTION = "challenge_assumption"
    CONNECT_IDEAS = "connect_ideas"
    REFINE_DECISION = "refine_decision"


@dataclass(frozen=True)
class NormalizedOutput:
    content: str
    references: list[str]
    contribution_type: ContributionType


@dataclass(frozen=True)
class RepetitionPolicy:
    """Thresholds for the prefix-containment repetition check."""

    min_overlap_chars: int = 90
    prefix_window_chars: int = 180


@dataclass
class DecisionBoard:
    claim: str
    for_case: str
    against_case: str
    confidence: str
    next_action: str
    source_message_id: str | None = None


_UUID_RE = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}\b",
    re.IGNORECASE,
)
_CONTRIBUTION_LINE_RE = re.compile(r"^\s*Contribution\s*:", re.IGNORECASE | re.MULTILINE)
_REFERENCES_LINE_RE = re.compile(r"^\s*References\s*:", re.IGNORECASE | re.MULTILINE)
_DECISION_BOARD_RE = re.compile(r"^\s*Decision\s*Board\s*:", re.IGNORECASE | re.MULTILINE)
_METADATA_LINES_RE = re.compile(
    r"^\s*(?:Contribution|References)\s*:.*$", re.IGNORECASE | re.MULTILINE
)
_WHITESPACE_RE = re.compile(r"\s+")

_PENDING = "Pending synthesis"
_DEFAULT_CONFIDENCE = "Medium"

_ROLE_CONTRIBUTIONS: dict[AgentRole, ContributionType] = {
    AgentRole.CONTRARIAN: ContributionType.CHALLENGE_ASSUMPTION,
    AgentRole.SYNTHESIZER: ContributionType.REFINE_DECISION,
}

_PHASE_CONTRIBUTIONS: dict[Phase, ContributionType] = {
    Phase.DIVERGE: ContributionType.ADD_EVIDENCE,
    Phase.CHALLENGE: ContributionType.CHALLENGE_ASSUMPTION,
    Phase.SYNTHESIZE: ContributionType.REFINE_DECISION,
}


def _normalize_text(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value.lower()).strip()


def resolve_contribution_type(phase: Phase, agent_role: AgentRole) -> ContributionType:
    """Role wins over phase; default contributors follow the phase."""
    if agent_role in _ROLE_CONTRIBUTIONS:
        return _ROLE_CONTRIBUTIONS[agent_role]
    return _PHASE_CONTRIBUTIONS[phase]


def extract_message_references(content: str) -> list[str]:
    """Return UUID-shaped message ids in first-seen order, without duplicates."""
    return list(dict.fromkeys(_UUID_RE.findall(content)))


def _with_contribution_line(content: str, contribution_type: ContributionType) -> str:
    if _CONTRIBUTION_LINE_RE.search(content):
        return content
    return f"Contribution: {contribution_type.value}\n{content}".strip()


def _with_references_line(content: str, references: list[str]) -> str:
    if _REFERENCES_LINE_RE.search(content):
        return content
    return f"References: {', '.join(references)}\n{content}".strip()


def _with_decision_board_block(content: str) -> str:
    if _DECISION_BOARD_RE.search(content):
        return content
    return "\n".join([
        content.strip(),
        "",
        "Decision Board:",
        f"Claim: {_PENDING}",
        f"For: {_PENDING}",
        f"Against: {_PENDING}",
        f"Confidence: {_DEFAULT_CONFIDENCE}",
        "Next Action: Review this round and decide the next prompt.",
    ])


def normalize_agent_output(
    content: str,
    phase: Phase,
    agent_role: AgentRole,
    allowed_reference_ids: list[str],
    fallback_reference_id: str,
) -> NormalizedOutput:
    """Inject the Contribution/References headers and, when required, a Decision Board.

    Every injection is skipped when the line already exists, so the function
    is idempotent: normalizing its own output returns the same content.
    """
    contribution_type = resolve_contribution_type(phase, agent_role)

    references = extract_message_references(content)
    if not references:
        references = [allowed_reference_ids[0] if allowed_reference_ids else fallback_reference_id]

    normalized = content.strip()
    normalized = _with_contribution_line(normalized, contribution_type)
    normalized = _with_references_line(normalized, references)
    if requires_decision_board(phase, agent_role):
        normalized = _with_decision_board_block(normalized)

    return NormalizedOutput(
        content=normalized,
        references=references,
        contribution_type=contribution_type,
    )


def _strip_metadata(content: str) -> str:
    return _METADATA_LINES_RE.sub("", content).strip()


def is_pure_repetition(
    candidate: str,
    prior_assistant_messages: list[str],
    policy: RepetitionPolicy = RepetitionPolicy(),
) -> bool:
    """True when the candidate adds nothing over an earlier assistant message.

    A candidate repeats a prior message when, after metadata stripping and
    case/whitespace normalization, the two are equal, or both are at least
    ``policy.min_overlap_chars`` long and the opening window of the shorter
    one appears verbatim inside the longer one.
    """
    normalized_candidate = _normalize_text(_strip_metadata(candidate))
    if not normalized_candidate:
        return False

    for previous in prior_assistant_messages:
        normalized_previous = _normalize_text(_strip_metadata(previous))
        if not normalized_previous:
            continue
        if normalized_candidate == normalized_previous:
            return True

        if len(normalized_candidate) <= len(normalized_previous):
            shorter, longer = normalized_candidate, normalized_previous
        else:
            shorter, longer = normalized_previous, normalized_candidate

        if len(shorter) < policy.min_overlap_chars:
            continue
        if shorter[: policy.prefix_window_chars] in longer:
            return True
    return False


def _line_value(content: str, label: str) -> str:
    match = re.search(rf"^\s*{re.escape(label)}\s*:\s*(.+)$", content, re.IGNORECASE | re.MULTILINE)
    return match.group(1).strip() if match else ""


def parse_decision_board(content: str, source_message_id: str | None = None) -> DecisionBoard | None:
    """Read a Decision Board block back out of a message, or None if absent or empty."""
    if not _DECISION_BOARD_RE.search(content):
        return None

    claim = _line_value(content, "Claim")
    for_case = _line_value(content, "For")
    against_case = _line_value(content, "Against")
    confidence = _line_value(content, "Confidence")
    next_action = _line_value(content, "Next Action")

    if not any((claim, for_case, against_case, confidence, next_action)):
        return None

    return DecisionBoard(
        claim=claim or _PENDING,
        for_case=for_case or _PENDING,
        against_case=against_case or _PENDING,
        confidence=confidence or _DEFAULT_CONFIDENCE,
        next_action=next_action or "Review this round and set the next step.",
        source_message_id=source_message_id,
    )
