"""Tests for panel selection, provider wiring, Ctrl-C handling and the conference loop in conference/cli.py."""

import signal
from unittest.mock import AsyncMock, MagicMock

import click
import pytest
from click.testing import CliRunner

import conference.cli as cli
from config.config_loader import (
    AgentConfig,
    AppConfig,
    DefaultsConfig,
    GateConfig,
    ProviderConfig,
)
from conference.models import AgentProfile, Completion, RoundStatus
from tests.conftest import MockProvider


def _provider_cfg(name: str, sdk: str) -> ProviderConfig:
    return ProviderConfig(name=name, sdk=sdk, api_key_env=f"{name.upper()}_KEY", timeout_sec=5, max_tokens=256)


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        defaults=DefaultsConfig(user_id="tester", default_panel=["scout", "critic"]),
        providers={
            "p1": _provider_cfg("p1", "openai"),
            "p2": _provider_cfg("p2", "anthropic"),
            "p3": _provider_cfg("p3", "mystery"),
        },
        agents={
            "scout": AgentConfig("scout", "Scout", "p1", "model-1"),
            "critic": AgentConfig("critic", "Critic", "p2", "model-2"),
            "judge": AgentConfig("judge", "Judge", "p1", "model-3"),
        },
        gate=GateConfig(),
        available_providers={"p1", "p2", "p3"},
    )


def _varied_provider(name: str) -> MockProvider:
    """A provider whose every answer is distinct, so reruns never look repetitive."""
    provider = MockProvider(name)
    calls = {"n": 0}

    def answer(model, messages, on_delta):
        calls["n"] += 1
        text = f"{name} view #{calls['n']} using {model}."
        on_delta(text)
        return Completion(content=text, prompt_tokens=10, completion_tokens=5)

    provider.stream = AsyncMock(side_effect=answer)
    return provider


# -- panel selection ---------------------------------------------------------

def test_determine_panel_default(app_config):
    panel = cli._determine_panel(app_config, agents_arg=None, file_agents=[])
    assert [a.id for a in panel] == ["scout", "critic"]
    assert panel[0] == AgentProfile("scout", "Scout", "p1", "model-1")


def test_determine_panel_front_matter_over_default(app_config):
    panel = cli._determine_panel(app_config, agents_arg=None, file_agents=["judge"])
    assert [a.id for a in panel] == ["judge"]


def test_determine_panel_agents_arg_wins(app_config):
    panel = cli._determine_panel(app_config, agents_arg="judge, scout", file_agents=["critic"])
    assert [a.id for a in panel] == ["judge", "scout"]


def test_determine_panel_unknown_agent(app_config):
    with pytest.raises(click.BadParameter, match="ghost"):
        cli._determine_panel(app_config, agents_arg="scout,ghost", file_agents=[])


# -- provider wiring ---------------------------------------------------------

def test_build_all_providers_maps_sdk(app_config, monkeypatch):
    built: list[str] = []

    def factory(cfg):
        built.append(cfg.name)
        return MockProvider(cfg.name)

    monkeypatch.setattr(cli, "PROVIDER_CLASSES", {"openai": factory, "anthropic": factory})
    providers = cli._build_all_providers(app_config)
    assert sorted(providers) == ["p1", "p2"]
    assert built == ["p1", "p2"]


def test_build_all_providers_skips_failing_constructor(app_config, monkeypatch, caplog):
    def broken(cfg):
        raise RuntimeError("bad key")

    monkeypatch.setattr(cli, "PROVIDER_CLASSES", {"openai": broken, "anthropic": MockProvider})
    providers = cli._build_all_providers(app_config)
    assert list(providers) == ["p2"]
    assert "Failed to instantiate provider 'p1'" in caplog.text


# -- conference loop ---------------------------------------------------------

async def test_run_conference_single_round(app_config):
    panel = cli._determine_panel(app_config, None, [])
    providers = {"p1": _varied_provider("p1"), "p2": _varied_provider("p2")}

    result = await cli._run_conference(
        config=app_config,
        providers=providers,
        panel=panel,
        user_id="tester",
        prompt="Should we shard the database?",
        follow_ups=[],
        retry_failed=False,
        interactive=False,
    )

    assert result is not None
    assert result.round_number == 1
    assert result.status is RoundStatus.COMPLETED
    assert providers["p1"].stream.await_count == 1
    assert providers["p2"].stream.await_count == 1


async def test_run_conference_follow_ups_open_new_rounds(app_config):
    panel = cli._determine_panel(app_config, None, [])
    providers = {"p1": _varied_provider("p1"), "p2": _varied_provider("p2")}

    result = await cli._run_conference(
        config=app_config,
        providers=providers,
        panel=panel,
        user_id="tester",
        prompt="Should we shard the database?",
        follow_ups=["What about read replicas?", "  "],
        retry_failed=False,
        interactive=False,
    )

    assert result.round_number == 2
    assert result.status is RoundStatus.COMPLETED
    assert providers["p1"].stream.await_count == 2


async def test_run_conference_reports_missing_provider(app_config):
    panel = cli._determine_panel(app_config, None, [])
    providers = {"p1": _varied_provider("p1")}

    result = await cli._run_conference(
        config=app_config,
        providers=providers,
        panel=panel,
        user_id="tester",
        prompt="Should we shard the database?",
        follow_ups=[],
        retry_failed=True,
        interactive=False,
    )

    assert result.status is RoundStatus.PARTIALLY_FAILED
    assert result.failed_agent_ids == ["critic"]


# -- Ctrl-C ------------------------------------------------------------------

def test_sigint_first_press_cancels_round():
    conference = MagicMock()
    conference.cancel.return_value = True
    handler = cli._sigint_handler(conference)

    handler()
    conference.cancel.assert_called_once()
    with pytest.raises(KeyboardInterrupt):
        handler()


def test_sigint_with_nothing_to_cancel_interrupts():
    conference = MagicMock()
    conference.cancel.return_value = False
    with pytest.raises(KeyboardInterrupt):
        cli._sigint_handler(conference)()


async def test_sigint_handler_only_installed_while_round_runs():
    seen = []

    async def one_round():
        seen.append(signal.getsignal(signal.SIGINT))

    await cli._cancellable(MagicMock(), one_round())

    assert seen[0] is not signal.default_int_handler
    assert signal.getsignal(signal.SIGINT) is signal.default_int_handler


def test_read_reply_abort_ends_session(monkeypatch):
    def abort(*args, **kwargs):
        raise click.Abort()

    monkeypatch.setattr(cli.click, "prompt", abort)
    assert cli._read_reply() == ""


# -- command line ------------------------------------------------------------

def test_main_requires_prompt():
    result = CliRunner().invoke(cli.main, ["--skip-health-check"])
    assert result.exit_code == 1
    assert "Provide a PROMPT" in result.output


def test_main_rejects_unknown_agent():
    result = CliRunner().invoke(cli.main, ["Hello", "--agents", "ghost", "--skip-health-check"])
    assert result.exit_code == 1
    assert "Unknown agent" in result.output
