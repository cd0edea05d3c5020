"""
Generation service clients.

Every backend implements the same two calls:
  - generate(context, instruction_template): one-shot summary
  - chat(context, history, message): follow-up answer with the full replay

Backends:
  - "openai": any OpenAI-compatible /chat/completions endpoint (OpenAI,
    OpenRouter, ...), framed with a native system message
  - "anthropic": the /v1/messages endpoint, framed with a priming pair
  - "fake": deterministic offline stub for local runs and tests

Calls are plain HTTPX requests bounded by a timeout. There is no retry here:
any error, timeout or empty reply becomes a GenerationFailure.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from common.config import Settings
from .conversation import ConversationContextBuilder, FramingVariant, Message
from .errors import GenerationFailure
from .stores import Turn

logger = logging.getLogger("llm")

SUMMARY_SYSTEM = (
    "You are a knowledgeable medical AI assistant specializing in analyzing patient "
    "medical records and providing clinical summaries."
)

# The three section headings are relied on by the UI; keep them stable.
SUMMARY_TEMPLATE = """You are a medical AI assistant helping doctors quickly understand a patient's medical history.

You have been provided with the following patient medical documents:

{context}

Please analyze these documents and provide:

1. **Patient Medical Summary** (concise, 200-300 words):
   - Key medical conditions and diagnoses
   - Chronic illnesses or ongoing treatments
   - Significant past medical events
   - Current medications (if mentioned)
   - Allergies (if mentioned)
   - Recent test results or vital signs

2. **Important Clinical Notes**:
   - Critical information requiring immediate attention
   - Trends or patterns in health status
   - Risk factors

3. **Basic Care Guidance**:
   - **Dietary Recommendations**: Based on conditions identified
   - **Exercise Guidance**: Appropriate activity levels
   - **Lifestyle Modifications**: General wellness advice

Format the response in clear sections with markdown."""

ANTHROPIC_VERSION = "2023-06-01"


class Generator:
    """Interface the pipeline talks to."""

    builder: ConversationContextBuilder

    async def generate(self, context: str, instruction_template: str = SUMMARY_TEMPLATE) -> str:
        raise NotImplementedError

    async def chat(self, context: str, history: Sequence[Turn], message: str) -> str:
        raise NotImplementedError


class FakeGenerator(Generator):
    """Deterministic stand-in that never leaves the process."""

    model = "fake-llm"

    def __init__(self, variant: FramingVariant = FramingVariant.SYSTEM_ROLE):
        self.builder = ConversationContextBuilder(variant)

    async def generate(self, context: str, instruction_template: str = SUMMARY_TEMPLATE) -> str:
        documents = context.count("=== Document: ")
        return (
            "## Patient Medical Summary\n"
            f"[FAKE LLM] Local stub summary grounded on {documents} document(s).\n\n"
            "## Important Clinical Notes\n[FAKE LLM] None.\n\n"
            "## Basic Care Guidance\n[FAKE LLM] None."
        )

    async def chat(self, context: str, history: Sequence[Turn], message: str) -> str:
        messages = self.builder.build_request(context, history, message)
        return f"[FAKE LLM] Reply to '{message.strip()}' after {len(messages)} messages."


class LLMClient(Generator):
    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        base_url: str,
        *,
        timeout: float = 60.0,
        summary_max_tokens: int = 2000,
        chat_max_tokens: int = 1500,
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if provider not in ("openai", "anthropic"):
            raise ValueError(f"Unknown LLM provider: {provider}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.summary_max_tokens = summary_max_tokens
        self.chat_max_tokens = chat_max_tokens
        self.temperature = temperature
        self._transport = transport
        variant = FramingVariant.SYSTEM_ROLE if provider == "openai" else FramingVariant.PRIMING_PAIR
        self.builder = ConversationContextBuilder(variant)

    # --- public API ------------------------------------------------------------
    async def generate(self, context: str, instruction_template: str = SUMMARY_TEMPLATE) -> str:
        prompt = instruction_template.format(context=context)
        messages: List[Message] = [{"role": "user", "content": prompt}]
        if self.builder.variant is FramingVariant.SYSTEM_ROLE:
            messages.insert(0, {"role": "system", "content": SUMMARY_SYSTEM})
        return await self._complete(messages, self.summary_max_tokens)

    async def chat(self, context: str, history: Sequence[Turn], message: str) -> str:
        messages = self.builder.build_request(context, history, message)
        logger.info("Chat request with %s messages (%s prior turns)", len(messages), len(history))
        return await self._complete(messages, self.chat_max_tokens)

    # --- transport -------------------------------------------------------------
    def _request(self, messages: List[Message], max_tokens: int) -> Dict[str, Any]:
        if self.provider == "openai":
            return {
                "url": f"{self.base_url}/chat/completions",
                "headers": {
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                "json": {
                    "model": self.model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                    "temperature": self.temperature,
                },
            }
        return {
            "url": f"{self.base_url}/v1/messages",
            "headers": {
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            "json": {
                "model": self.model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": self.temperature,
            },
        }

    @staticmethod
    def _content(provider: str, data: Any) -> str:
        """Pull the reply text out of a provider response; reject unexpected shapes."""
        malformed = GenerationFailure("Generation service returned malformed JSON")
        if not isinstance(data, dict):
            raise malformed
        if provider == "openai":
            choices = data.get("choices") or [{}]
            if not isinstance(choices, list) or not isinstance(choices[0], dict):
                raise malformed
            message = choices[0].get("message") or {}
            if not isinstance(message, dict):
                raise malformed
            content = message.get("content")
            if content is not None and not isinstance(content, str):
                raise malformed
            return content or ""
        blocks = data.get("content") or []
        if not isinstance(blocks, list) or not all(isinstance(b, dict) for b in blocks):
            raise malformed
        texts = [b.get("text", "") for b in blocks if b.get("type", "text") == "text"]
        if not all(isinstance(t, str) for t in texts):
            raise malformed
        return "".join(texts)

    async def _complete(self, messages: List[Message], max_tokens: int) -> str:
        if not self.api_key:
            raise GenerationFailure("LLM_API_KEY not configured")

        request = self._request(messages, max_tokens)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(request["url"], headers=request["headers"], json=request["json"])
        except httpx.TimeoutException as exc:
            logger.error("%s request timed out after %ss", self.provider, self.timeout)
            raise GenerationFailure(f"Generation service timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            logger.error("%s request failed: %s", self.provider, exc)
            raise GenerationFailure(f"Generation service unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error("%s error %s: %s", self.provider, response.status_code, response.text)
            raise GenerationFailure(f"Generation service returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationFailure("Generation service returned malformed JSON") from exc

        text = self._content(self.provider, data).strip()
        if not text:
            raise GenerationFailure("Generation service returned an empty response")
        return text


def build_generator(settings: Settings) -> Generator:
    if settings.llm_provider == "fake":
        return FakeGenerator()
    return LLMClient(
        settings.llm_provider,
        settings.llm_model,
        settings.llm_api_key,
        settings.llm_base_url,
        timeout=settings.llm_timeout_seconds,
        summary_max_tokens=settings.summary_max_tokens,
        chat_max_tokens=settings.chat_max_tokens,
        temperature=settings.llm_temperature,
    )
