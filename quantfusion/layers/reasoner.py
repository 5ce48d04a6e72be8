"""
External reasoning service clients.

Every client takes a prompt and a temperature and returns raw text. Transport
and SDK failures are raised as ReasonerError so the orchestrator can count
them as failed attempts.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol
import aiohttp
from loguru import logger

from quantfusion.core.config import LLMConfig
from quantfusion.core.exceptions import ReasonerError


SYSTEM_PROMPT = (
    "You are a deterministic financial analysis AI. "
    "Always respond with valid JSON only, no markdown."
)


class Reasoner(Protocol):
    provider: str
    model: str

    async def complete(self, prompt: str, temperature: float) -> str:
        ...

    async def close(self) -> None:
        ...


def extract_json(text: Optional[str]) -> Any:
    """Decode the JSON object between the first '{' and the last '}'."""
    if not text:
        raise ReasonerError("Empty response from reasoner")

    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise ReasonerError("No JSON found in reasoner response")

    try:
        return json.loads(text[start:end])
    except json.JSONDecodeError as e:
        raise ReasonerError(f"Invalid JSON in reasoner response: {e}") from e


# =============================================================================
# SDK CLIENTS
# =============================================================================

class _SDKReasoner:
    """Shared setup for the SDK-backed clients."""

    provider = ""

    def __init__(self, config: LLMConfig, client: Any = None):
        self.config = config
        self.model = config.llm_model
        self._client = client
        self._enabled = client is not None

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def complete(self, prompt: str, temperature: float) -> str:
        if not self._enabled:
            raise ReasonerError(f"{self.provider} reasoner is not configured")
        try:
            text = await self._create(prompt, temperature)
        except ReasonerError:
            raise
        except Exception as e:
            raise ReasonerError(f"{self.provider} request failed: {e}") from e
        if not text:
            raise ReasonerError(f"{self.provider} returned an empty response")
        return text

    async def _create(self, prompt: str, temperature: float) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


class GroqReasoner(_SDKReasoner):
    provider = "groq"

    def __init__(self, config: LLMConfig, client: Any = None):
        if client is None and config.groq_api_key:
            try:
                from groq import AsyncGroq
                client = AsyncGroq(
                    api_key=config.groq_api_key,
                    timeout=config.request_timeout_seconds,
                )
                logger.info(f"Reasoner initialized with Groq ({config.llm_model})")
            except ImportError:
                logger.warning("groq package not installed - run: pip install groq")
        super().__init__(config, client)

    async def _create(self, prompt: str, temperature: float) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.config.max_output_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
        )
        return response.choices[0].message.content


class OpenAIReasoner(_SDKReasoner):
    provider = "openai"

    def __init__(self, config: LLMConfig, client: Any = None):
        if client is None and config.openai_api_key:
            try:
                import openai
                client = openai.AsyncOpenAI(
                    api_key=config.openai_api_key,
                    timeout=config.request_timeout_seconds,
                )
                logger.info(f"Reasoner initialized with OpenAI ({config.llm_model})")
            except ImportError:
                logger.warning("openai package not installed")
        super().__init__(config, client)

    async def _create(self, prompt: str, temperature: float) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.config.max_output_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
        )
        return response.choices[0].message.content


class AnthropicReasoner(_SDKReasoner):
    provider = "anthropic"

    def __init__(self, config: LLMConfig, client: Any = None):
        if client is None and config.anthropic_api_key:
            try:
                import anthropic
                client = anthropic.AsyncAnthropic(
                    api_key=config.anthropic_api_key,
                    timeout=config.request_timeout_seconds,
                )
                logger.info(f"Reasoner initialized with Anthropic ({config.llm_model})")
            except ImportError:
                logger.warning("anthropic package not installed")
        super().__init__(config, client)

    async def _create(self, prompt: str, temperature: float) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.config.max_output_tokens,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
        )
        return response.content[0].text


# =============================================================================
# GEMINI (REST)
# =============================================================================

class GeminiReasoner:
    """Gemini generateContent endpoint over aiohttp."""

    provider = "gemini"

    def __init__(self, config: LLMConfig):
        self.config = config
        self.model = config.llm_model
        self.api_key = config.gemini_api_key
        self._session: Optional[aiohttp.ClientSession] = None

        if not self.api_key:
            logger.warning("GEMINI_API_KEY not set - Gemini reasoner disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def complete(self, prompt: str, temperature: float) -> str:
        if not self.api_key:
            raise ReasonerError("Gemini API key not configured")

        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "topP": 0.8,
                "topK": 40,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }
        session = await self._get_session()

        try:
            async with session.post(
                self.config.gemini_api_url, params={"key": self.api_key}, json=payload
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ReasonerError(f"Gemini API request failed: {resp.status} - {body[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise ReasonerError(f"Gemini transport error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ReasonerError("Gemini request timed out") from e

        try:
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ReasonerError("Invalid response structure from Gemini API") from e


# =============================================================================
# FACTORY
# =============================================================================

REASONERS = {
    "groq": GroqReasoner,
    "openai": OpenAIReasoner,
    "anthropic": AnthropicReasoner,
    "gemini": GeminiReasoner,
}


def create_reasoner(config: LLMConfig) -> Optional[Reasoner]:
    """Reasoner for the configured provider, or None when it cannot be used."""
    cls = REASONERS.get(config.llm_provider)
    if cls is None:
        logger.warning(f"Unknown reasoner provider: {config.llm_provider}")
        return None

    reasoner = cls(config)
    if not reasoner.enabled:
        logger.warning(f"Reasoner disabled - no usable {config.llm_provider} client")
        return None
    return reasoner
