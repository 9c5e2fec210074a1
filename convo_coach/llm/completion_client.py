"""
Chat completion client for the conversation partner.

Supports:
- Non-streaming chat completions against any OpenAI-compatible endpoint
  (Groq by default)
- Connection pooling for reduced latency
- Typed failures for the engine's error-placeholder path
"""

import asyncio
import logging
from typing import Optional, Sequence, Mapping

import aiohttp

from convo_coach.adapters import CompletionBackend
from convo_coach.config import settings
from convo_coach.errors import CompletionError
from convo_coach.models import ChatCompletionRequest, ChatMessage

logger = logging.getLogger(__name__)


class CompletionClient(CompletionBackend):
    """
    Sends one chat request per turn and returns the raw reply text.

    Features:
    - System prompt + history + new user turn in a single request
    - Persistent HTTP connection pool
    - No automatic retry: the learner's next utterance is the retry
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ):
        self.api_key = settings.llm_api_key if api_key is None else api_key
        self.base_url = base_url or settings.llm_base_url
        self.model = model or settings.llm_model
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.max_tokens = settings.llm_max_tokens if max_tokens is None else max_tokens
        self.timeout_s = settings.llm_timeout_s if timeout_s is None else timeout_s

        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create persistent aiohttp session with connection pooling."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,  # Max 10 concurrent connections
                ttl_dns_cache=300,  # Cache DNS for 5 minutes
                keepalive_timeout=120,  # Keep connections alive for 2 minutes
            )

            timeout = aiohttp.ClientTimeout(
                total=self.timeout_s,
                connect=5,
            )

            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout
            )
            logger.info("Created persistent completion session with connection pooling")

        return self._session

    async def close(self):
        """Close persistent session."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.info("Closed completion persistent session")

    def build_request(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, str]],
    ) -> ChatCompletionRequest:
        """
        Build the request body.

        Args:
            system_prompt: Prompt carrying the learning goal
            messages: Prior turns followed by the new user turn, role-tagged

        Returns:
            Validated request model
        """
        return ChatCompletionRequest(
            model=self.model,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                *(ChatMessage(role=m["role"], content=m["content"]) for m in messages),
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[Mapping[str, str]],
    ) -> str:
        """
        Request a single completion.

        Args:
            system_prompt: Prompt carrying the learning goal
            messages: Prior turns followed by the new user turn, role-tagged

        Returns:
            Raw reply text (prose plus any embedded feedback block)

        Raises:
            CompletionError: On missing configuration, transport failure,
                timeout, non-2xx status or a body without a completion
        """
        if not self.api_key:
            raise CompletionError("Completion API not configured - set LLM_API_KEY")

        payload = self.build_request(system_prompt, messages).model_dump()
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            session = await self._get_session()
            async with session.post(self.base_url, headers=headers, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Completion API error {response.status}: {error_text[:200]}")
                    raise CompletionError(
                        f"Completion API returned {response.status}",
                        status=response.status,
                    )
                data = await response.json()

        except asyncio.TimeoutError as e:
            logger.error(f"Completion request timed out after {self.timeout_s}s")
            raise CompletionError("Completion request timed out") from e
        except aiohttp.ClientError as e:
            logger.error(f"Completion network error: {e}")
            raise CompletionError(f"Completion network error: {e}") from e
        except ValueError as e:
            logger.error(f"Completion response was not valid JSON: {e}")
            raise CompletionError("Completion response was not valid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"Completion response had no content: {str(data)[:200]}")
            raise CompletionError("Completion response had no content") from e

        if not isinstance(content, str) or not content.strip():
            raise CompletionError("Completion response was empty")

        logger.info(f"Completion received: {len(content)} chars")
        return content
