"""
LLM access with provider fallback.

Gemini is tried first (one retry after a short pause unless the error is
a quota error), then the Groq key pool in round-robin, then Anthropic if
a key is configured. An empty answer counts as a failed call.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

import anthropic
from google import genai
from groq import AsyncGroq

from config import (
    ANTHROPIC_API_KEY,
    ANTHROPIC_MODEL,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    GROQ_API_KEYS,
    GROQ_MODEL,
)

logger = logging.getLogger(__name__)

GEMINI_RETRIES = 1
GEMINI_RETRY_DELAY = 2.0
ANTHROPIC_MAX_TOKENS = 1024


class AIProviderError(Exception):
    """Every configured LLM provider failed."""


class QuotaExceededError(AIProviderError):
    """Every provider failed and the last one was out of quota."""


@dataclass
class AIResult:
    text: str
    provider: str


def _result(text: Optional[str], provider: str) -> AIResult:
    # Blocked or candidate-less responses come back without text
    if not text or not text.strip():
        raise AIProviderError(f"Empty answer from {provider}")
    return AIResult(text=text, provider=provider)


def is_quota_error(error: BaseException) -> bool:
    """Quota or rate-limit failure, whatever the vendor SDK."""
    for attr in ("code", "status_code"):
        if getattr(error, attr, None) == 429:
            return True
    text = f"{getattr(error, 'status', '')} {error}".upper()
    return "RESOURCE_EXHAUSTED" in text or "QUOTA" in text


def extract_json(text: str) -> dict:
    """Parse the first JSON object in an LLM answer, tolerating markdown fences and chatter."""
    text = text or ""
    start = text.find("{")
    if start < 0:
        raise ValueError("No JSON object in AI response")
    try:
        parsed, _end = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in AI response: {e}") from e
    return parsed


class AIService:
    def __init__(
        self,
        gemini=None,
        groq_clients: Optional[list] = None,
        anthropic_client=None,
        retries: int = GEMINI_RETRIES,
        retry_delay: float = GEMINI_RETRY_DELAY,
    ):
        self.gemini = gemini
        self.groq_clients = list(groq_clients or [])
        self.anthropic = anthropic_client
        self.retries = retries
        self.retry_delay = retry_delay
        self._groq_index = 0

    @classmethod
    def from_config(cls) -> "AIService":
        return cls(
            gemini=genai.Client(api_key=GEMINI_API_KEY) if GEMINI_API_KEY else None,
            groq_clients=[AsyncGroq(api_key=key) for key in GROQ_API_KEYS],
            anthropic_client=anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None,
        )

    @property
    def configured(self) -> bool:
        return bool(self.gemini or self.groq_clients or self.anthropic)

    async def call(self, prompt: str) -> AIResult:
        if not self.configured:
            raise AIProviderError("No AI provider configured")

        last_error: Optional[BaseException] = None

        if self.gemini is not None:
            try:
                return await self._call_gemini(prompt)
            except Exception as e:
                last_error = e
                logger.warning("Gemini unavailable, falling back to Groq pool")

        if self.groq_clients:
            try:
                return await self._call_groq_pool(prompt)
            except Exception as e:
                last_error = e
                logger.warning("Groq pool exhausted: %s", e)

        if self.anthropic is not None:
            try:
                return await self._call_anthropic(prompt)
            except Exception as e:
                last_error = e
                logger.warning("Anthropic failed: %s", e)

        logger.error("All AI providers failed (free request quota per minute likely exceeded)")
        if last_error is not None and is_quota_error(last_error):
            raise QuotaExceededError("AI quota exceeded") from last_error
        raise AIProviderError("AI_PROVIDER_FAILED") from last_error

    async def _call_gemini(self, prompt: str) -> AIResult:
        retries = self.retries
        while True:
            try:
                response = await self.gemini.aio.models.generate_content(
                    model=GEMINI_MODEL,
                    contents=prompt,
                )
                return _result(response.text, "Gemini")
            except Exception as e:
                logger.error("Gemini error: %s", e)
                if is_quota_error(e) or retries <= 0:
                    raise
                logger.warning("Retrying Gemini (%d left)", retries)
                retries -= 1
                await asyncio.sleep(self.retry_delay)

    async def _call_groq_pool(self, prompt: str) -> AIResult:
        """Try each Groq account once, starting where the previous call left off."""
        pool_size = len(self.groq_clients)
        for attempt in range(pool_size):
            client = self.groq_clients[self._groq_index]
            account = self._groq_index + 1
            self._groq_index = (self._groq_index + 1) % pool_size
            try:
                completion = await client.chat.completions.create(
                    messages=[{"role": "user", "content": prompt}],
                    model=GROQ_MODEL,
                )
                return _result(completion.choices[0].message.content, "Groq")
            except Exception as e:
                if is_quota_error(e) and attempt < pool_size - 1:
                    logger.warning("Groq account %d saturated, rotating", account)
                    continue
                raise
        raise AIProviderError("Groq pool is empty")

    async def _call_anthropic(self, prompt: str) -> AIResult:
        response = await self.anthropic.messages.create(
            model=ANTHROPIC_MODEL,
            max_tokens=ANTHROPIC_MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )
        return _result(response.content[0].text if response.content else None, "Anthropic")


_service: Optional[AIService] = None


def get_ai_service() -> AIService:
    global _service
    if _service is None:
        _service = AIService.from_config()
    return _service


async def smart_ai_call(prompt: str) -> AIResult:
    return await get_ai_service().call(prompt)
