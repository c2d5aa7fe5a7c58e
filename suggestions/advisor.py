"""
Suggestion Advisors — optional natural-language backends for snooze times.

An advisor returns a raw dict; the SuggestionEngine validates and repairs it.
Any failure here is surfaced as an exception and resolved by the engine's
deterministic fallback, never shown to the caller.

Expected advisor output:
    {
      "suggested_time": "2026-03-03T09:00:00+00:00",
      "reasoning": "Sender asked for an answer by Tuesday morning",
      "alternatives": [{"time": "...", "reason": "..."}],
      "confidence": 0.8
    }
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from config.settings import LLMConfig
from models.errors import AdvisorUnavailableError
from models.schemas import ItemContext, SnoozePreferences

logger = structlog.get_logger()


class SuggestionAdvisor(ABC):
    """Port for advisory snooze-time backends."""

    name = "advisor"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def suggest(
        self,
        context: ItemContext,
        preferences: SnoozePreferences,
        now: datetime,
    ) -> dict[str, Any]:
        ...


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("```")[1].strip()
        if text.startswith("json"):
            text = text[4:].strip()
    return text


_SYSTEM_PROMPT = """You help a busy professional decide when to come back to an email.
Suggest the best time to resurface it, considering urgency, sender importance,
the type of request (meeting, deadline, FYI), the effort needed to respond,
the working hours and the current day of the week.

Return ONLY valid JSON with this structure:
{
  "suggested_time": "ISO 8601 datetime with offset",
  "reasoning": "one or two sentences",
  "alternatives": [{"time": "ISO 8601 datetime with offset", "reason": "short reason"}],
  "confidence": 0.0-1.0
}
Give between one and three alternatives. All times must be in the future."""


class LLMSuggestionAdvisor(SuggestionAdvisor):
    """
    Asks Claude or OpenAI for a snooze time.
    The SDK client is created lazily so importing this module never needs
    the provider package or credentials.
    """

    name = "llm"

    def __init__(self, config: LLMConfig, work_start_hour: int = 9,
                 work_end_hour: int = 17, timezone: str = "UTC"):
        self._config = config
        self._client = None
        self._work_start_hour = work_start_hour
        self._work_end_hour = work_end_hour
        self._timezone = timezone

    @property
    def is_openai(self) -> bool:
        return self._config.provider == "openai"

    @property
    def available(self) -> bool:
        key = self._config.api_key or ""
        # Unset ${VAR} placeholders survive env substitution verbatim
        return bool(key) and not key.startswith("${")

    async def _get_client(self):
        if self._client is None:
            if not self.available:
                raise AdvisorUnavailableError(
                    "No API key configured for suggestion advisor",
                    details={"provider": self._config.provider},
                )
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
                logger.info("llm_client_initialized", provider=self._config.provider,
                            model=self._config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._config.provider, error=str(e))
                raise AdvisorUnavailableError(
                    f"Could not initialise {self._config.provider} client: {e}",
                    details={"provider": self._config.provider},
                ) from e
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]]) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()

        if self.is_openai:
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            return response.choices[0].message.content or ""

        response = await client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text

    def build_prompt(self, context: ItemContext, preferences: SnoozePreferences,
                     now: datetime) -> str:
        start = preferences.work_start_hour if preferences.work_start_hour is not None else self._work_start_hour
        end = preferences.work_end_hour if preferences.work_end_hour is not None else self._work_end_hour
        tz = preferences.timezone or self._timezone
        return (
            f"Current time: {now.isoformat()} ({now.strftime('%A')})\n"
            f"User time zone: {tz}\n"
            f"Working hours: {start:02d}:00-{end:02d}:00, Monday to Friday\n\n"
            f"Subject: {context.subject}\n"
            f"From: {context.sender}\n"
            f"Priority: {context.priority.value}\n"
            f"Category: {context.category}\n\n"
            f"Content preview:\n{context.body[:500]}"
        )

    async def suggest(
        self,
        context: ItemContext,
        preferences: SnoozePreferences,
        now: datetime,
    ) -> dict[str, Any]:
        raw = await self._call_llm(
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": self.build_prompt(context, preferences, now)}],
        )
        if not raw:
            raise ValueError("empty advisor response")
        data = json.loads(_strip_code_fence(raw))
        if not isinstance(data, dict):
            raise ValueError("advisor response is not a JSON object")
        logger.debug("advisor_response", item_id=context.item_id, keys=sorted(data))
        return data
