"""Deliberation phases: round number -> phase, panel -> roles, system prompts."""

from dataclasses import dataclass

from conference.models import AgentRole, Phase


@dataclass(frozen=True)
class PhaseMeta:
    phase: Phase
    label: str
    short_description: str


_PHASE_META: dict[Phase, PhaseMeta] = {
    Phase.DIVERGE: PhaseMeta(
        Phase.DIVERGE, "Diverge", "Expand perspectives and surface distinct framings."
    ),
    Phase.CHALLENGE: PhaseMeta(
        Phase.CHALLENGE, "Challenge", "Stress-test assumptions, evidence, and edge cases."
    ),
    Phase.SYNTHESIZE: PhaseMeta(
        Phase.SYNTHESIZE, "Synthesize", "Converge on decisions, trade-offs, and next actions."
    ),
}

_PHASE_INSTRUCTIONS: dict[Phase, str] = {
    Phase.DIVERGE: "Add a perspective not yet covered. Do not summarize the full thread.",
    Phase.CHALLENGE: "Challenge assumptions and test failure modes with concrete counterpoints.",
    Phase.SYNTHESIZE: "Synthesize toward a decision with clear trade-offs and next steps.",
}

_ROLE_INSTRUCTIONS: dict[AgentRole, str] = {
    AgentRole.CONTRARIAN: (
        "Role mode: Contrarian. Challenge assumptions, surface edge cases, "
        "and present the strongest counter-position."
    ),
    AgentRole.SYNTHESIZER: (
        "Role mode: Synthesizer. Integrate points of agreement/disagreement "
        "and produce a Decision Board update."
    ),
    AgentRole.DEFAULT: "Role mode: Contributor. Add useful substance without repeating prior points.",
}

_CONTRIBUTION_RULE = (
    "Contribution rule: add value by adding evidence, challenging an assumption, "
    "connecting ideas, or refining a decision."
)


def phase_meta(phase: Phase) -> PhaseMeta:
    return _PHASE_META[phase]


def phase_for_round(round_number: int) -> Phase:
    """Rounds 1-2 diverge, 3-4 challenge, 5 onwards synthesize."""
    if round_number <= 2:
        return Phase.DIVERGE
    if round_number <= 4:
        return Phase.CHALLENGE
    return Phase.SYNTHESIZE


def requires_decision_board(phase: Phase, role: AgentRole) -> bool:
    return role is AgentRole.SYNTHESIZER or phase is Phase.SYNTHESIZE


def assign_roles(agent_ids: list[str]) -> dict[str, AgentRole]:
    """Derive per-round roles from the ordered panel.

    The last agent synthesizes. The first agent plays contrarian when the
    panel has more than one member, so no agent holds both roles.
    """
    roles = {agent_id: AgentRole.DEFAULT for agent_id in agent_ids}
    if not agent_ids:
        return roles
    synthesizer = agent_ids[-1]
    roles[synthesizer] = AgentRole.SYNTHESIZER
    if len(agent_ids) > 1 and agent_ids[0] != synthesizer:
        roles[agent_ids[0]] = AgentRole.CONTRARIAN
    return roles


def _dedupe(values: list[str | None]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def build_system_prompt(
    phase: Phase,
    round_number: int,
    agent_name: str,
    agent_role: AgentRole = AgentRole.DEFAULT,
    citation_pool: list[str] | None = None,
    fallback_reference_id: str | None = None,
) -> str:
    """Compose the system instructions for one agent turn."""
    header = f"Conference phase: {phase_meta(phase).label} (Round {round_number})"

    reference_pool = _dedupe([*(citation_pool or []), fallback_reference_id])
    if reference_pool:
        reference_instruction = (
            "References requirement: include a 'References:' line with at least one "
            f"message id from this list: {', '.join(reference_pool)}."
        )
    else:
        reference_instruction = (
            "References requirement: include a 'References:' line with at least one prior message id."
        )

    if requires_decision_board(phase, agent_role):
        decision_board_instruction = (
            "Include a 'Decision Board' block with fields: Claim, For, Against, Confidence, Next Action."
        )
    else:
        decision_board_instruction = "Do not include a Decision Board block unless you are synthesizing."

    return "\n".join([
        header,
        f"You are {agent_name}.",
        _PHASE_INSTRUCTIONS[phase],
        _ROLE_INSTRUCTIONS[agent_role],
        _CONTRIBUTION_RULE,
        reference_instruction,
        decision_board_instruction,
        "Keep your response concise, high-signal, and actionable.",
    ])
