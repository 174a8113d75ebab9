"""LLM integration for spending advice."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable

ADVICE_TOOL = {
    "name": "give_advice",
    "description": "Give one short, personalized tip to build spending awareness",
    "input_schema": {
        "type": "object",
        "properties": {
            "advice": {
                "type": "string",
                "description": "Personalized spending advice for the user (1-3 sentences)",
            }
        },
        "required": ["advice"],
    },
}

SYSTEM_PROMPT = """You help people build awareness of their spending habits.
You are told how many times the user opened their wallet recently and, when
known, how many of those opens ended in spending money.

Call the give_advice tool with one friendly, concrete tip."""

NO_ACTIVITY_MESSAGE = "Start by recording your first wallet open to get personalized advice!"
FALLBACK_MESSAGE = "Could not load advice at this time. Please try again later."

logger = logging.getLogger(__name__)


class AdviceError(Exception):
    """Base exception for advice generation errors."""

    pass


class ApiKeyNotSetError(AdviceError):
    """Raised when ANTHROPIC_API_KEY is not set."""

    def __init__(self) -> None:
        super().__init__("ANTHROPIC_API_KEY not set. Cannot generate advice.")


class ApiError(AdviceError):
    """Raised when every attempt at the API call failed."""

    pass


def _build_prompt(open_count: int, spent_count: int, not_spent_count: int) -> str:
    """Build the user message for the advice request.

    Args:
        open_count: Number of wallet opens
        spent_count: Opens annotated as spending money
        not_spent_count: Opens annotated as not spending

    Returns:
        Formatted prompt string
    """
    lines = [
        "Based on your recent wallet activity, here is some personalized spending advice:",
        "",
        f"You opened your wallet {open_count} times.",
    ]
    if spent_count or not_spent_count:
        lines.append(
            f"You spent money {spent_count} times and kept your wallet closed "
            f"{not_spent_count} times."
        )
    lines += ["", "Here's a tip to build spending awareness:"]
    return "\n".join(lines)


class AdviceGenerator:
    """Generates spending advice using the Claude API, with retry and backoff."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        max_attempts: int = 3,
        base_delay_sec: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        model: str = "claude-3-5-haiku-latest",
    ) -> None:
        """Initialize the advice generator.

        Args:
            api_key: Anthropic API key. If not provided, reads from ANTHROPIC_API_KEY.
            max_attempts: Total attempts per request, including the first.
            base_delay_sec: Delay before the first retry; doubles on each retry.
            sleep: Called with the backoff delay between attempts.
            model: Model name for the request.

        Raises:
            ApiKeyNotSetError: If no API key is available.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self._api_key:
            raise ApiKeyNotSetError()
        self._max_attempts = max_attempts
        self._base_delay_sec = base_delay_sec
        self._sleep = sleep
        self._model = model
        self._client: Any = None
        self._last: tuple[tuple[int, int, int], str] | None = None

    def _get_client(self) -> Any:
        """Lazily initialize the Anthropic client."""
        if self._client is None:
            try:
                import anthropic
            except ImportError as e:
                raise AdviceError(
                    "anthropic package not installed. Run: pip install anthropic"
                ) from e
            self._client = anthropic.Anthropic(api_key=self._api_key)
        return self._client

    def _request(self, prompt: str) -> str:
        client = self._get_client()
        response = client.messages.create(
            model=self._model,
            max_tokens=300,
            system=SYSTEM_PROMPT,
            tools=[ADVICE_TOOL],
            tool_choice={"type": "tool", "name": "give_advice"},
            messages=[{"role": "user", "content": prompt}],
        )
        for block in response.content:
            if block.type == "tool_use" and block.name == "give_advice":
                if not hasattr(block, "input") or not isinstance(block.input, dict):
                    continue
                advice = str(block.input.get("advice", "")).strip()
                if advice:
                    return advice
        raise ValueError("response contained no advice")

    def generate_advice(
        self,
        open_count: int,
        spent_count: int = 0,
        not_spent_count: int = 0,
    ) -> str:
        """Generate advice for the given activity counts.

        Zero opens needs no request and returns NO_ACTIVITY_MESSAGE. The same
        input as the previous successful call returns the cached advice.

        Raises:
            ApiError: If all attempts fail; chained to the last error.
        """
        if open_count == 0:
            return NO_ACTIVITY_MESSAGE

        key = (open_count, spent_count, not_spent_count)
        if self._last is not None and self._last[0] == key:
            return self._last[1]

        prompt = _build_prompt(open_count, spent_count, not_spent_count)
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                advice = self._request(prompt)
            except AdviceError:
                raise
            except Exception as e:
                last_error = e
                if attempt >= self._max_attempts:
                    break
                delay = self._base_delay_sec * 2 ** (attempt - 1)
                logger.warning(
                    "Advice generation failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self._max_attempts,
                    delay,
                    e,
                )
                self._sleep(delay)
            else:
                self._last = (key, advice)
                return advice

        logger.error(
            "Advice generation failed after %d attempts: %s", self._max_attempts, last_error
        )
        raise ApiError(f"API call failed: {last_error}") from last_error


def advice_or_fallback(
    generator: AdviceGenerator | None,
    open_count: int,
    spent_count: int = 0,
    not_spent_count: int = 0,
) -> str:
    """Advice text for display; never blank and never raises AdviceError.

    A missing generator (e.g. no API key configured) still yields the
    no-activity message for zero opens and the fallback message otherwise.
    """
    if open_count == 0:
        return NO_ACTIVITY_MESSAGE
    if generator is None:
        return FALLBACK_MESSAGE
    try:
        return generator.generate_advice(open_count, spent_count, not_spent_count)
    except AdviceError as e:
        logger.warning("Using fallback advice: %s", e)
        return FALLBACK_MESSAGE
