"""
LlamaServerManager - async client for a llama.cpp server's OpenAI-compatible API.

Provides the instance-slot operations the Critic depends on:
1. create_instance: reserve a slot bound to a system prompt
2. get_next_token_probabilities: grammar-constrained one-token query that
   returns the probability mass on each candidate token
3. reset_instance: drop conversation history, keep the system prompt

Slots are tracked client-side. Each slot is pinned to the server's KV-cache
slot of the same id (id_slot) so its system prompt stays cached.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)


logger = logging.getLogger(__name__)


@dataclass
class LlamaInstance:
    """One reserved slot: a system prompt plus its conversation history."""

    slot_id: int
    system_prompt: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    is_processing: bool = False

    def build_messages(self, prompt: str) -> List[Dict[str, str]]:
        """Full chat payload for a new user prompt on this slot."""
        return (
            [{"role": "system", "content": self.system_prompt}]
            + self.messages
            + [{"role": "user", "content": prompt}]
        )

    def reset(self) -> None:
        self.messages = []


class LlamaServerManager:
    """Manages instance slots on a llama.cpp server."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        top_logprobs: Optional[int] = None,
        connect_attempts: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the manager with llama.cpp server configuration."""
        import config

        self.base_url = base_url or config.LLAMA_SERVER_URL
        self.model = model or config.LLAMA_MODEL
        self.top_logprobs = (
            top_logprobs if top_logprobs is not None else config.CRITIC_TOP_LOGPROBS
        )
        self.connect_attempts = (
            connect_attempts
            if connect_attempts is not None
            else config.LLAMA_CONNECT_ATTEMPTS
        )
        self.retry_wait = wait_exponential(multiplier=1, min=1, max=10)

        self.client = client or AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or config.LLAMA_API_KEY,
            timeout=timeout or config.LLM_TIMEOUT_SECONDS,
        )

        self._instances: Dict[int, LlamaInstance] = {}
        self._next_slot_id = 0
        self._is_server_ready = False

    @property
    def is_server_ready(self) -> bool:
        return self._is_server_ready

    async def connect(self) -> bool:
        """
        Wait for the server to answer, retrying with exponential backoff.

        Returns:
            True if the server is reachable. Failure is logged, not raised.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_attempts),
                wait=self.retry_wait,
                retry=retry_if_exception_type(Exception),
                reraise=True,
            ):
                with attempt:
                    await self.client.models.list()
            self._is_server_ready = True
            logger.info(f"llama.cpp server ready at {self.base_url}")
        except Exception as e:
            self._is_server_ready = False
            logger.error(f"llama.cpp server not reachable at {self.base_url}: {e}")

        return self._is_server_ready

    async def create_instance(self, system_prompt: str) -> int:
        """
        Reserve a new slot with the given system prompt.

        Returns:
            The slot ID for this instance
        """
        slot_id = self._next_slot_id
        self._next_slot_id += 1
        instance = LlamaInstance(slot_id=slot_id, system_prompt=system_prompt)
        self._instances[slot_id] = instance

        if self._is_server_ready:
            try:
                await self._pre_cache_system_prompt(instance)
                logger.info(f"Created instance {slot_id} with system prompt cached")
            except Exception as e:
                logger.warning(
                    f"Failed to pre-cache system prompt for instance {slot_id}: {e}"
                )

        return slot_id

    async def _pre_cache_system_prompt(self, instance: LlamaInstance) -> None:
        """Process the system prompt once so later queries reuse the KV cache."""
        await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": instance.system_prompt}],
            max_tokens=1,
            extra_body={"id_slot": instance.slot_id, "cache_prompt": True},
        )

    def get_instance(self, slot_id: int) -> Optional[LlamaInstance]:
        return self._instances.get(slot_id)

    def _require_instance(self, slot_id: int) -> LlamaInstance:
        instance = self._instances.get(slot_id)
        if instance is None:
            raise KeyError(f"Instance with slot ID {slot_id} not found")
        return instance

    async def get_next_token_probabilities(
        self,
        slot_id: int,
        prompt: str,
        candidate_tokens: Sequence[str],
        grammar: Optional[str] = None,
    ) -> Dict[str, float]:
        """
        Ask one question on a slot and read the next-token distribution.

        Args:
            slot_id: The instance slot ID
            prompt: User prompt appended to the slot's conversation
            candidate_tokens: Tokens whose probability mass is wanted
            grammar: Optional GBNF grammar constraining the answer

        Returns:
            Map from each candidate token to its probability (0.0 if the
            server did not report it)
        """
        instance = self._require_instance(slot_id)
        if instance.is_processing:
            raise RuntimeError(f"Instance {slot_id} is already processing a request")

        extra_body: Dict[str, Any] = {"id_slot": slot_id, "cache_prompt": True}
        if grammar:
            extra_body["grammar"] = grammar

        instance.is_processing = True
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=instance.build_messages(prompt),
                max_tokens=1,
                temperature=0.0,
                logprobs=True,
                top_logprobs=self.top_logprobs,
                extra_body=extra_body,
            )
        finally:
            instance.is_processing = False

        choice = response.choices[0]
        probabilities = self._candidate_probabilities(choice, candidate_tokens)

        answer = choice.message.content or ""
        instance.messages.append({"role": "user", "content": prompt})
        instance.messages.append({"role": "assistant", "content": answer})

        return probabilities

    @staticmethod
    def _candidate_probabilities(
        choice: Any, candidate_tokens: Sequence[str]
    ) -> Dict[str, float]:
        """
        Sum the probability mass of each candidate over token variants.

        "yes", " yes" and "Yes" are distinct tokens to the model but the same
        answer to us.
        """
        probabilities = {token: 0.0 for token in candidate_tokens}
        lookup = {token.strip().lower(): token for token in candidate_tokens}

        logprobs = getattr(choice, "logprobs", None)
        content = getattr(logprobs, "content", None) if logprobs else None
        if not content:
            logger.warning("Server returned no logprobs for constrained query")
            return probabilities

        for entry in content[0].top_logprobs or []:
            candidate = lookup.get(entry.token.strip().lower())
            if candidate is not None:
                probabilities[candidate] += math.exp(entry.logprob)

        return probabilities

    def reset_instance(self, slot_id: int) -> None:
        """Reset an instance, keeping the system prompt but removing other messages."""
        instance = self._require_instance(slot_id)
        if instance.is_processing:
            raise RuntimeError(
                f"Cannot reset instance {slot_id} while it's processing a request"
            )
        instance.reset()
        logger.debug(f"Reset instance {slot_id}")

    async def close(self) -> None:
        """Release the HTTP client."""
        self._is_server_ready = False
        await self.client.close()
