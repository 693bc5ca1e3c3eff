"""Token-based cost estimation and the budget-exceeded condition."""

import logging
from collections.abc import Callable

import tiktoken

from config.config_loader import PricingConfig

logger = logging.getLogger(__name__)

# Used when tiktoken has no encoding registered for the configured model
_FALLBACK_ENCODING = "cl100k_base"


class BudgetExceededError(Exception):
    """Raised when the next model call would push spend past the budget ceiling."""

    def __init__(self, current: float, estimated: float, ceiling: float) -> None:
        self.current = current
        self.estimated = estimated
        self.ceiling = ceiling
        super().__init__(
            f"Budget exceeded. Current: ${current:.2f}, "
            f"Estimated: ${estimated:.2f}, Budget: ${ceiling:.2f}"
        )


def _encoding_for(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug("No tiktoken encoding for %s, using %s", model, _FALLBACK_ENCODING)
        return tiktoken.get_encoding(_FALLBACK_ENCODING)


def tiktoken_counter(model: str) -> Callable[[str], int]:
    """Return a token counter backed by the tiktoken encoding for ``model``.

    The encoding is loaded on first use, so building a counter never touches
    the tiktoken cache.
    """
    encoding: tiktoken.Encoding | None = None

    def count(text: str) -> int:
        nonlocal encoding
        if encoding is None:
            encoding = _encoding_for(model)
        return len(encoding.encode(text))

    return count


class CostEstimator:
    """Converts token counts into money using per-1K input/output rates.

    Stateless apart from its configuration; safe to share between sessions.
    """

    def __init__(self, pricing: PricingConfig, count_tokens: Callable[[str], int]) -> None:
        self._pricing = pricing
        self._count_tokens = count_tokens

    @property
    def pricing(self) -> PricingConfig:
        return self._pricing

    def count_tokens(self, text: str) -> int:
        return self._count_tokens(text)

    def actual_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000 * self._pricing.input_per_1k
            + output_tokens / 1000 * self._pricing.output_per_1k
        )

    def estimate_cost(self, prompt_text: str, assumed_output_tokens: int | None = None) -> float:
        """Estimate the cost of sending ``prompt_text`` and receiving a typical reply."""
        if assumed_output_tokens is None:
            assumed_output_tokens = self._pricing.assumed_output_tokens
        return self.actual_cost(self.count_tokens(prompt_text), assumed_output_tokens)
