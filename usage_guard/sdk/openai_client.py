"""
Guarded OpenAI client wrapper.

Charges the daily budget before each OpenAI call and refuses the call
when the budget is exhausted. Rate-limited and transient failures are
retried with backoff by the OpenAI client itself; a retried request is
still covered by its single charge.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.guard import Decision, UsageGuard

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class BudgetExceeded(Exception):
    """Raised when a metered call is refused because the daily budget is spent."""
    def __init__(self, decision: Decision):
        super().__init__(
            f"Daily budget exceeded for period {decision.period_key}; "
            f"remaining ${decision.remaining_budget}"
        )
        self.decision = decision


class GuardedOpenAI:
    """OpenAI client wrapper that enforces the per-user daily budget.

    The estimated units are charged before the request is sent. When the
    guard refuses, no OpenAI request is made.
    """

    def __init__(
        self,
        guard: UsageGuard,
        model: str,
        feature: str,
        estimated_units: int,
        client: Optional[OpenAI] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        """Initialize guarded OpenAI client.

        Args:
            guard: Usage guard charged before every call
            model: OpenAI model name (required)
            feature: Feature identifier for logging (required)
            estimated_units: Units charged per call
            client: Preconfigured OpenAI client (defaults to OpenAI())
            max_retries: Retries with backoff for the default client; never charged again

        Raises:
            ValueError: If model or feature is missing/empty or estimate is negative
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")
        if estimated_units is None or estimated_units < 0:
            raise ValueError("estimated_units must be a non-negative integer")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.guard = guard
        self.model = model
        self.feature = feature
        self.estimated_units = estimated_units
        self.client = client if client is not None else OpenAI(max_retries=max_retries)

    def chat(
        self,
        user_id: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion after charging the user's budget.

        Args:
            user_id: Authenticated user being charged
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty
            BudgetExceeded: If the daily budget does not cover the estimate
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        self._charge(user_id)

        return self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

    def image(self, user_id: str, prompt: str, size: str = "1024x1024", **kwargs: Any) -> Any:
        """Generate an image after charging the user's budget.

        Raises:
            ValueError: If prompt is empty
            BudgetExceeded: If the daily budget does not cover the estimate
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        self._charge(user_id)

        return self.client.images.generate(
            model=self.model,
            prompt=prompt,
            size=size,
            **kwargs
        )

    def _charge(self, user_id: str) -> Decision:
        decision = self.guard.check_and_consume(user_id, self.estimated_units)
        if not decision.allowed:
            logger.warning(
                "Refusing %s call for %s/%s: daily budget exceeded",
                self.model, self.feature, user_id,
            )
            raise BudgetExceeded(decision)
        return decision
