"""Abstract base for all streaming model providers."""

from abc import ABC, abstractmethod
from collections.abc import Callable

from conference.models import ChatMessage, Completion

DeltaCallback = Callable[[str], None]


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


class AIProvider(ABC):
    """Abstract base for all model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the configured provider name (e.g. 'openrouter', 'claude')."""
        ...

    @abstractmethod
    def timeout_sec(self) -> int:
        """Upper bound for one streamed call, enforced by the caller."""
        ...

    @abstractmethod
    async def stream(self, model: str, messages: list[ChatMessage], on_delta: DeltaCallback) -> Completion:
        """Stream a chat completion, calling ``on_delta`` with each text fragment.

        Args:
            model: Model identifier for this call (agents bind their own model).
            messages: System prompt followed by the transcript.
            on_delta: Receives every streamed text fragment in order.

        Returns:
            Completion whose ``content`` is the full text; authoritative even if
            some fragments were never delivered through ``on_delta``. May be
            empty; callers decide what an empty answer means.

        Raises:
            ProviderError: On API failure.
        """
        ...


def split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Separate system instructions for SDKs that take them out of band."""
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    return system, [m for m in messages if m.role != "system"]
