# agent_core/services/openai_service.py
"""
Reasoning service client.

Thin wrapper over OpenAI chat completions: a system instruction plus
role-tagged messages in, free text (or a JSON object) out. Every call runs
under an explicit deadline and retries transient API failures.
"""

import asyncio
import json
from typing import Any

import openai
from openai import AsyncOpenAI

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ReasoningServiceError(Exception):
    """Raised when the reasoning service cannot produce a response."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


class OpenAIService:
    """Chat completion client used by triage, onboarding, memory and replies."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client
        self.model = settings.OPENAI_MODEL
        self.timeout = settings.OPENAI_TIMEOUT_SECONDS
        self.max_retries = max(1, settings.OPENAI_MAX_RETRIES)

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            if not settings.OPENAI_API_KEY:
                raise ReasoningServiceError("OPENAI_API_KEY not configured", recoverable=False)
            self.client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=self.timeout)
            logger.info("OpenAI client initialized", model=self.model, timeout=self.timeout)
        return self.client

    async def complete(
        self,
        system: str,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = False,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Run one completion and return the response text.

        Raises:
            ReasoningServiceError: on deadline expiry, exhausted retries,
                client errors or an empty response
        """
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "temperature": settings.OPENAI_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or settings.OPENAI_MAX_TOKENS,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            return await asyncio.wait_for(self._call_with_retry(request), timeout=self.timeout)
        except TimeoutError as e:
            logger.error("Reasoning call exceeded deadline", timeout=self.timeout, model=self.model)
            raise ReasoningServiceError(
                f"Reasoning call timed out after {self.timeout}s", recoverable=True
            ) from e

    async def complete_json(self, system: str, messages: list[dict[str, str]], **kwargs) -> dict:
        """Completion in JSON mode, parsed into a dict."""
        raw = await self.complete(system, messages, json_mode=True, **kwargs)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ReasoningServiceError("Reasoning service returned invalid JSON") from e
        if not isinstance(parsed, dict):
            raise ReasoningServiceError("Reasoning service returned non-object JSON")
        return parsed

    async def _call_with_retry(self, request: dict[str, Any]) -> str:
        client = self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await client.chat.completions.create(**request)

                if not response.choices or not response.choices[0].message.content:
                    raise ReasoningServiceError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()
                logger.debug(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    response_length=len(result),
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error(
                        "OpenAI client error (not retrying)",
                        status_code=e.status_code,
                        error=str(e),
                    )
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except ReasoningServiceError as e:
                last_error = e
                logger.warning("OpenAI returned no content", attempt=attempt + 1)

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=self.max_retries,
            final_error=str(last_error),
        )
        raise ReasoningServiceError(
            f"OpenAI API failed after {self.max_retries} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None


def format_conversation(
    messages: list, agent_handle: str, thread_type: str = "individual"
) -> list[dict[str, str]]:
    """
    Convert thread messages into role-tagged chat messages.

    Agent-authored messages become "assistant"; in group threads other
    speakers are prefixed with "{name} said:".
    """
    formatted = []
    for message in messages:
        is_agent = message.is_from(agent_handle)
        content = message.content
        if thread_type == "group" and not is_agent and message.sender_name:
            content = f"{message.sender_name} said: {content}"
        formatted.append({"role": "assistant" if is_agent else "user", "content": content})
    return formatted
