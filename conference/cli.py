"""Click CLI: loads config, builds the gate and providers, and runs a conference."""

import asyncio
import logging
import signal
import sys
import uuid
from collections.abc import Awaitable
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from conference.gate.resilience import build_gate
from conference.gateway import GenerationGateway
from conference.healthcheck import run_health_checks
from conference.models import AgentProfile, AgentRunState, AgentStatus, RoundResult
from conference.output import (
    print_agent_message,
    print_decision_board,
    print_round_header,
    print_round_result,
)
from conference.prompt_file import parse_prompt_file
from conference.providers.anthropic import AnthropicProvider
from conference.providers.base import AIProvider
from conference.providers.gemini import GeminiProvider
from conference.providers.openai_provider import OpenAIProvider
from conference.quality import RepetitionPolicy, parse_decision_board
from conference.replies import InMemoryReplyStore
from conference.runner import AgentStateBoard, RoundRunner
from conference.session import Conference, ConferenceError
from conference.usage import JsonlUsageRecorder, NullUsageRecorder, UsageRecorder

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by provider name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        provider_cfg = config.providers[name]
        if provider_cfg.sdk not in PROVIDER_CLASSES:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, provider_cfg.sdk)
            continue
        try:
            providers[name] = PROVIDER_CLASSES[provider_cfg.sdk](provider_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _determine_panel(config: AppConfig, agents_arg: str | None, file_agents: list[str]) -> list[AgentProfile]:
    """--agents wins over front matter, which wins over the configured default panel."""
    if agents_arg:
        agent_ids = [a.strip() for a in agents_arg.split(",") if a.strip()]
    elif file_agents:
        agent_ids = file_agents
    else:
        agent_ids = config.defaults.default_panel

    unknown = [a for a in agent_ids if a not in config.agents]
    if unknown:
        raise click.BadParameter(f"Unknown agent(s): {', '.join(unknown)}", param_hint="--agents")

    return [
        AgentProfile(
            id=agent_id,
            name=config.agents[agent_id].name,
            provider=config.agents[agent_id].provider,
            model=config.agents[agent_id].model,
        )
        for agent_id in agent_ids
    ]


def _check_and_filter_providers(
    providers: dict[str, AIProvider],
    panel: list[AgentProfile],
) -> dict[str, AIProvider]:
    """Ping each provider the panel uses. Exits if the user declines to continue or none pass."""
    targets: dict[str, tuple[AIProvider, str]] = {}
    for agent in panel:
        if agent.model and agent.provider in providers and agent.provider not in targets:
            targets[agent.provider] = (providers[agent.provider], agent.model)
    if not targets:
        return providers

    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(targets))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return providers

    working = {n: p for n, p in providers.items() if n not in failed_names}
    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}")
    if not click.confirm("Continue anyway? Agents on failed providers will fail their turns.", default=True):
        sys.exit(0)

    console.print()
    return working


def _build_usage_recorder(config: AppConfig) -> UsageRecorder:
    if config.defaults.usage_log_path:
        return JsonlUsageRecorder(config.defaults.usage_log_path)
    return NullUsageRecorder()


def _on_state_change(panel: list[AgentProfile]):
    names = {agent.id: agent.name for agent in panel}
    last_status: dict[str, AgentStatus] = {}

    def listener(agent_id: str, state: AgentRunState) -> None:
        if last_status.get(agent_id) is state.status:
            return
        last_status[agent_id] = state.status
        name = names.get(agent_id, agent_id)
        if state.status is AgentStatus.GENERATING:
            console.print(f"[cyan]...[/cyan] {name} is thinking ({state.model_id})")
        elif state.status is AgentStatus.FAILED:
            console.print(f"[red]FAIL[/red] {name}: {state.error}")
        elif state.status is AgentStatus.CANCELLED:
            console.print(f"[yellow]CANCELLED[/yellow] {name}")

    return listener


class _Transcript:
    """Prints messages the store has gained since the last call."""

    def __init__(self, store: InMemoryReplyStore, conversation_id: str, panel: list[AgentProfile]) -> None:
        self._store = store
        self._conversation_id = conversation_id
        self._agents = {agent.id: agent for agent in panel}
        self._seen = 0
        self._round_number = 0

    async def flush(self) -> None:
        messages = await self._store.list_messages(self._conversation_id)
        for message in messages[self._seen:]:
            if message.mode == "human":
                self._round_number += 1
                print_round_header(self._round_number)
                console.print(f"[bold]You:[/bold] {message.content}\n")
            else:
                print_agent_message(self._agents.get(message.avatar_id or ""), message)
        self._seen = len(messages)

        latest_board = None
        for message in reversed(messages):
            if message.mode == "agent":
                latest_board = parse_decision_board(message.content, message.id)
                if latest_board:
                    break
        if latest_board:
            print_decision_board(latest_board)


async def _report(conference: Conference, transcript: _Transcript, result: RoundResult | None) -> None:
    await transcript.flush()
    if result is not None:
        print_round_result(result, conference.runner.panel, conference.runner.board.snapshot())


def _sigint_handler(conference: Conference):
    """First Ctrl-C cancels the running round; a second one, or one with nothing to cancel, interrupts."""
    presses = 0

    def handler() -> None:
        nonlocal presses
        presses += 1
        if presses > 1 or not conference.cancel():
            raise KeyboardInterrupt

    return handler


async def _cancellable(conference: Conference, operation: Awaitable[RoundResult | None]) -> RoundResult | None:
    """Await one round with Ctrl-C bound to its cancel signal."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _sigint_handler(conference))
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform; Ctrl-C will abort")
        return await operation
    try:
        return await operation
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _read_reply() -> str:
    # Only called between rounds; Ctrl-C raises here and click turns it into Abort.
    try:
        return click.prompt(
            "Reply (/retry to retry failed agents, empty to quit)", default="", show_default=False
        )
    except click.Abort:
        return ""


async def _run_conference(
    config: AppConfig,
    providers: dict[str, AIProvider],
    panel: list[AgentProfile],
    user_id: str,
    prompt: str,
    follow_ups: list[str],
    retry_failed: bool,
    interactive: bool,
) -> RoundResult | None:
    gate = build_gate(config.gate)
    store = InMemoryReplyStore()
    conversation_id = str(uuid.uuid4())
    gateway = GenerationGateway(providers, gate, _build_usage_recorder(config), user_id)
    runner = RoundRunner(
        conversation_id=conversation_id,
        panel=panel,
        generator=gateway,
        replies=store,
        board=AgentStateBoard(_on_state_change(panel)),
        repetition_policy=RepetitionPolicy(
            min_overlap_chars=config.quality.min_overlap_chars,
            prefix_window_chars=config.quality.prefix_window_chars,
        ),
        preview_chars=config.defaults.preview_chars,
        citation_window=config.defaults.citation_window,
    )
    conference = Conference(runner, store)
    transcript = _Transcript(store, conversation_id, panel)

    result: RoundResult | None = None
    try:
        result = await _cancellable(conference, conference.submit(prompt))
        await _report(conference, transcript, result)

        if retry_failed and conference.failed_agent_ids:
            console.print(f"[yellow]Retrying failed agents:[/yellow] {', '.join(conference.failed_agent_ids)}")
            result = await _cancellable(conference, conference.retry_all_failed())
            await _report(conference, transcript, result)

        pending = list(follow_ups)
        while True:
            if pending:
                text = pending.pop(0)
            elif interactive:
                text = _read_reply()
            else:
                break
            text = text.strip()
            if not text:
                break
            try:
                if text == "/retry":
                    result = await _cancellable(conference, conference.retry_all_failed())
                else:
                    result = await _cancellable(conference, conference.submit(text))
            except ConferenceError as exc:
                console.print(f"[yellow]{exc}[/yellow]")
                continue
            await _report(conference, transcript, result)
    finally:
        await gate.close()

    return result


@click.command()
@click.argument("prompt", required=False)
@click.option("--file", "prompt_file", type=click.Path(exists=True, dir_okay=False),
              help="Read the prompt from a .md file (front matter: agents, follow_ups)")
@click.option("--agents", default=None, help="Comma-separated agent ids, in turn order")
@click.option("--follow-up", "follow_ups", multiple=True, help="Message posted as a later round (repeatable)")
@click.option("--interactive/--no-interactive", default=False, help="Prompt for replies after each round")
@click.option("--retry-failed", is_flag=True, default=False, help="Retry failed agents once after the first round")
@click.option("--strict", is_flag=True, default=False, help="Deny generations when the gate store is unreachable")
@click.option("--user", "user_id", default=None, help="User id for rate limits and usage (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False, help="Skip the API connectivity check at startup")
def main(
    prompt: str | None,
    prompt_file: str | None,
    agents: str | None,
    follow_ups: tuple[str, ...],
    interactive: bool,
    retry_failed: bool,
    strict: bool,
    user_id: str | None,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Panel Conference -- a turn-taking panel of AI agents, round by round.

    \b
    Examples:
      panel-conference "Should we split the billing service?"
      panel-conference "Monorepo vs polyrepo?" --agents skeptic,synthesist
      panel-conference --file prompt.md --follow-up "What about cost?"
      panel-conference "SQL or NoSQL?" --interactive --strict
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if strict:
        config.gate.strict = True

    file_agents: list[str] = []
    extra_follow_ups: list[str] = []
    if prompt_file:
        try:
            parsed = parse_prompt_file(Path(prompt_file))
        except ValueError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            sys.exit(1)
        prompt_text = parsed.content
        file_agents = parsed.agents
        extra_follow_ups = parsed.follow_ups
    elif prompt and prompt.strip():
        prompt_text = prompt.strip()
    else:
        console.print("[bold red]Error:[/bold red] Provide a PROMPT argument or --file.")
        sys.exit(1)

    try:
        panel = _determine_panel(config, agents, file_agents)
    except click.BadParameter as exc:
        console.print(f"[bold red]Error:[/bold red] {exc.message}")
        sys.exit(1)
    if not panel:
        console.print("[bold red]Error:[/bold red] The panel is empty. Use --agents or set defaults.default_panel.")
        sys.exit(1)

    providers = _build_all_providers(config)
    if not providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        providers = _check_and_filter_providers(providers, panel)

    effective_user = user_id or config.defaults.user_id
    console.print(f"\n[bold cyan]Panel Conference[/bold cyan] - {len(panel)} agents")
    labels = [f"{a.name} ({a.model or 'no model'})" for a in panel]
    console.print(f"Panel: {', '.join(labels)}")
    console.print("[dim]Ctrl-C cancels the running round.[/dim]\n")

    asyncio.run(
        _run_conference(
            config=config,
            providers=providers,
            panel=panel,
            user_id=effective_user,
            prompt=prompt_text,
            follow_ups=[*extra_follow_ups, *follow_ups],
            retry_failed=retry_failed,
            interactive=interactive,
        )
    )


if __name__ == "__main__":
    main()
