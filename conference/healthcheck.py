"""Provider health checks: ping each provider/model pair before a conference starts."""

import asyncio
import logging

from conference.models import ChatMessage
from conference.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_MESSAGES = [ChatMessage(role="user", content="Reply with the word OK only.")]
_TIMEOUT_SEC = 15.0


async def _check_one(label: str, provider: AIProvider, model: str) -> tuple[str, bool, str]:
    """Ping a single provider with ``model``. Returns (label, ok, error_message)."""
    try:
        await asyncio.wait_for(
            provider.stream(model, _PING_MESSAGES, lambda _chunk: None),
            timeout=_TIMEOUT_SEC,
        )
        return label, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", label, exc)
        return label, False, str(exc) or type(exc).__name__


async def run_health_checks(
    targets: dict[str, tuple[AIProvider, str]],
) -> dict[str, tuple[bool, str]]:
    """Ping all targets in parallel.

    Args:
        targets: label -> (provider, model). The CLI labels by provider name
            and pings the first model an agent binds on that provider.

    Returns:
        Dict mapping label -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(label, p, m) for label, (p, m) in targets.items()))
    return {label: (ok, err) for label, ok, err in results}
