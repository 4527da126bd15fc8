"""Rich console output for agent states, round results and decision boards."""

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from conference.models import AgentProfile, AgentRunState, AgentStatus, RoundResult, RoundStatus
from conference.phases import phase_meta, phase_for_round
from conference.quality import DecisionBoard
from conference.replies import StoredMessage

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLES = {
    AgentStatus.QUEUED: "dim",
    AgentStatus.GENERATING: "cyan",
    AgentStatus.COMPLETED: "green",
    AgentStatus.FAILED: "red",
    AgentStatus.CANCELLED: "yellow",
}

_ROUND_STYLES = {
    RoundStatus.RUNNING: "cyan",
    RoundStatus.COMPLETED: "green",
    RoundStatus.PARTIALLY_FAILED: "yellow",
    RoundStatus.CANCELLED: "yellow",
}


def print_round_header(round_number: int) -> None:
    meta = phase_meta(phase_for_round(round_number))
    console.print(Rule(f"[bold cyan]Round {round_number}: {meta.label}[/bold cyan]"))
    console.print(Text(meta.short_description, style="dim"))


def print_agent_message(agent: AgentProfile | None, message: StoredMessage) -> None:
    """Print one persisted agent contribution as a Markdown panel."""
    title = f"[bold]{agent.name}[/bold] ({agent.model})" if agent else message.avatar_id or "agent"
    console.print(Panel(Markdown(message.content), title=title, border_style="dim"))


def build_state_table(panel: list[AgentProfile], states: dict[str, AgentRunState]) -> Table:
    table = Table(title="Agents", show_lines=False)
    table.add_column("Agent")
    table.add_column("Model", style="dim")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for agent in panel:
        state = states.get(agent.id, AgentRunState())
        style = _STATUS_STYLES[state.status]
        detail = state.error or ""
        if state.retry_after_sec:
            detail += f" (retry in {state.retry_after_sec}s)"
        table.add_row(agent.name, state.model_id or "-", f"[{style}]{state.status.value}[/{style}]", detail)
    return table


def print_round_result(
    result: RoundResult,
    panel: list[AgentProfile],
    states: dict[str, AgentRunState],
) -> None:
    style = _ROUND_STYLES[result.status]
    console.print(build_state_table(panel, states))
    console.print(
        f"Round {result.round_number}: [{style}]{result.status.value}[/{style}]"
        + (f" | failed: {', '.join(result.failed_agent_ids)}" if result.failed_agent_ids else "")
    )
    for reply in result.dropped_replies:
        console.print(f"[yellow]Dropped queued reply:[/yellow] {reply.content[:80]}")


def print_decision_board(board: DecisionBoard) -> None:
    table = Table(title="Decision Board", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", overflow="fold")
    table.add_row("Claim", board.claim)
    table.add_row("For", board.for_case)
    table.add_row("Against", board.against_case)
    table.add_row("Confidence", board.confidence)
    table.add_row("Next Action", board.next_action)
    if board.source_message_id:
        table.add_row("Source", board.source_message_id)
    console.print(table)
