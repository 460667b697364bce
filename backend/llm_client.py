"""Anthropic client used by card chat, with rate limiting and token accounting."""

import logging
import time
from collections import deque
from collections.abc import Sequence

import anthropic
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from backend.config import settings
from backend.errors import InvalidArgument, TransientIO

logger = logging.getLogger(__name__)

_RETRYABLE = (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError)


class LLMClient:
    """Multi-turn chat over the Anthropic Messages API."""

    def __init__(self, client: anthropic.Anthropic | None = None) -> None:
        self.client = client or anthropic.Anthropic(api_key=settings.anthropic_api_key)
        self.model = settings.anthropic_model
        self.max_rpm = settings.anthropic_rate_limit_rpm
        self._request_timestamps: deque[float] = deque()
        self.total_input_tokens = 0
        self.total_output_tokens = 0

    def _throttle(self) -> None:
        now = time.monotonic()
        while self._request_timestamps and now - self._request_timestamps[0] > 60:
            self._request_timestamps.popleft()
        if len(self._request_timestamps) >= self.max_rpm:
            wait = 60 - (now - self._request_timestamps[0])
            if wait > 0:
                logger.info("Chat rate limit reached, sleeping %.1fs", wait)
                time.sleep(wait)
        self._request_timestamps.append(time.monotonic())

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(settings.anthropic_max_retries),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _send(self, kwargs: dict) -> anthropic.types.Message:
        self._throttle()
        return self.client.messages.create(**kwargs)

    def chat(
        self,
        messages: Sequence[dict[str, str]],
        system: str = "",
        max_tokens: int = 1024,
        temperature: float = 0.5,
    ) -> str:
        """Send a conversation and return the assistant's reply text.

        Raises:
            InvalidArgument: If the conversation is empty.
            TransientIO: If the API stays unreachable after retries.
        """
        if not messages:
            raise InvalidArgument("Conversation is empty")
        kwargs: dict = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": list(messages),
        }
        if system:
            kwargs["system"] = system
        try:
            response = self._send(kwargs)
        except _RETRYABLE as exc:
            raise TransientIO(f"Chat service unavailable: {exc}") from exc
        self.total_input_tokens += response.usage.input_tokens
        self.total_output_tokens += response.usage.output_tokens
        logger.debug(
            "Chat tokens: %d in, %d out",
            response.usage.input_tokens,
            response.usage.output_tokens,
        )
        return "".join(block.text for block in response.content if block.type == "text")

    def get_cost_estimate(self) -> dict[str, float]:
        input_cost = self.total_input_tokens * settings.llm_input_price_per_million / 1_000_000
        output_cost = self.total_output_tokens * settings.llm_output_price_per_million / 1_000_000
        return {
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
            "estimated_cost_usd": round(input_cost + output_cost, 4),
        }

