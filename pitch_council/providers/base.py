"""Abstract base for all completion providers."""

import dataclasses
import logging
from abc import ABC, abstractmethod

from pitch_council.models import Completion

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")

    @property
    def timed_out(self) -> bool:
        return "timed out" in str(self).lower()


class AIProvider(ABC):
    """Completion gateway: system prompt + user prompt in, text + token usage out."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'openai', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str, temperature: float) -> Completion:
        """Run one completion.

        Args:
            system_prompt: The role's system prompt.
            user_prompt: The conversation context and instruction for this turn.
            temperature: Sampling temperature for the role.

        Returns:
            Completion with content and token usage (None when not reported).

        Raises:
            ProviderError: On API failure, timeout, or invalid response.
        """
        ...

    async def complete(self, system_prompt: str, user_prompt: str, temperature: float) -> Completion:
        """Call ``generate``, retrying once on timeout with 1.5x the timeout.

        Any other failure is raised unchanged; non-ProviderError exceptions are
        wrapped so callers only ever see ProviderError.
        """
        try:
            return await self.generate(system_prompt, user_prompt, temperature)
        except ProviderError as exc:
            if not exc.timed_out:
                raise
            # Config may be shared across sessions; retry on a private copy
            cfg = getattr(self, "_config", None)
            if dataclasses.is_dataclass(cfg) and hasattr(cfg, "timeout_sec"):
                self._config = dataclasses.replace(cfg, timeout_sec=int(cfg.timeout_sec * 1.5))
                logger.warning("Provider %s timed out, retrying with %ds (1.5x)", self.name(), self._config.timeout_sec)
            else:
                cfg = None
                logger.warning("Provider %s timed out, retrying", self.name())
            try:
                return await self.generate(system_prompt, user_prompt, temperature)
            except ProviderError:
                raise
            except Exception as retry_exc:
                raise ProviderError(self.name(), f"Unexpected error on retry: {retry_exc}") from retry_exc
            finally:
                if cfg is not None:
                    self._config = cfg
        except Exception as exc:
            raise ProviderError(self.name(), f"Unexpected error: {exc}") from exc
