"""Load settings.yaml into typed dataclasses. Resolves API keys and Redis URL from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"
_STRICT_ENV = "CONFERENCE_GATE_STRICT"


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class AgentConfig:
    id: str
    name: str
    provider: str
    model: str | None = None


@dataclass
class GateConfig:
    strict: bool = False
    redis_url: str | None = None
    store_timeout_sec: float = 2.5
    rate_limit: int = 8
    rate_window_sec: int = 60
    idempotency_ttl_sec: int = 120
    max_concurrent: int = 2
    concurrency_ttl_sec: int = 300
    circuit_cooldown_sec: int = 20
    unavailable_cooldown_sec: int = 15


@dataclass
class QualityConfig:
    min_overlap_chars: int = 90
    prefix_window_chars: int = 180


@dataclass
class DefaultsConfig:
    user_id: str
    default_panel: list[str] = field(default_factory=list)
    preview_chars: int = 1000
    citation_window: int = 6
    usage_log_path: Path | None = None


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    agents: dict[str, AgentConfig]
    gate: GateConfig = field(default_factory=GateConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    available_providers: set[str] = field(default_factory=set)


def _env_flag(name: str) -> bool | None:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _load_gate(raw: dict) -> GateConfig:
    rate_raw = raw.get("rate_limit", {})
    concurrency_raw = raw.get("concurrency", {})
    circuit_raw = raw.get("circuit", {})

    strict = bool(raw.get("strict", False))
    env_strict = _env_flag(_STRICT_ENV)
    if env_strict is not None:
        strict = env_strict

    redis_url_env = raw.get("redis_url_env", "REDIS_URL")
    redis_url = os.environ.get(redis_url_env, "").strip() or raw.get("redis_url") or None

    return GateConfig(
        strict=strict,
        redis_url=redis_url,
        store_timeout_sec=float(raw.get("store_timeout_sec", 2.5)),
        rate_limit=int(rate_raw.get("limit", 8)),
        rate_window_sec=int(rate_raw.get("window_sec", 60)),
        idempotency_ttl_sec=int(raw.get("idempotency_ttl_sec", 120)),
        max_concurrent=int(concurrency_raw.get("max_concurrent", 2)),
        concurrency_ttl_sec=int(concurrency_raw.get("ttl_sec", 300)),
        circuit_cooldown_sec=int(circuit_raw.get("cooldown_sec", 20)),
        unavailable_cooldown_sec=int(circuit_raw.get("unavailable_cooldown_sec", 15)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if an agent
    names an unknown provider. Logs missing API keys but does not raise;
    callers check available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    usage_log_path = defaults_raw.get("usage_log_path")
    defaults = DefaultsConfig(
        user_id=str(defaults_raw.get("user_id", "local")),
        default_panel=list(defaults_raw.get("default_panel", [])),
        preview_chars=int(defaults_raw.get("preview_chars", 1000)),
        citation_window=int(defaults_raw.get("citation_window", 6)),
        usage_log_path=Path(usage_log_path) if usage_log_path else None,
    )

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_name, provider_raw in raw["providers"].items():
        providers[provider_name] = ProviderConfig(
            name=provider_name,
            sdk=provider_raw["sdk"],
            api_key_env=provider_raw["api_key_env"],
            timeout_sec=int(provider_raw["timeout_sec"]),
            max_tokens=int(provider_raw["max_tokens"]),
            base_url=provider_raw.get("base_url"),
        )

        api_key = os.environ.get(provider_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s; set %s in .env",
                provider_name,
                provider_raw["api_key_env"],
            )

    agents: dict[str, AgentConfig] = {}
    for agent_id, agent_raw in raw["agents"].items():
        provider = str(agent_raw["provider"])
        if provider not in providers:
            raise ValueError(f"Agent '{agent_id}' uses unknown provider '{provider}'")
        model = agent_raw.get("model")
        agents[agent_id] = AgentConfig(
            id=agent_id,
            name=str(agent_raw.get("name", agent_id)),
            provider=provider,
            model=str(model) if model else None,
        )

    quality_raw = raw.get("quality", {})
    quality = QualityConfig(
        min_overlap_chars=int(quality_raw.get("min_overlap_chars", 90)),
        prefix_window_chars=int(quality_raw.get("prefix_window_chars", 180)),
    )

    return AppConfig(
        defaults=defaults,
        providers=providers,
        agents=agents,
        gate=_load_gate(raw.get("gate", {})),
        quality=quality,
        available_providers=available_providers,
    )
