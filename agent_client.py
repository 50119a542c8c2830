"""Client for the remote computer-use agent (Anthropic Messages API)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import anthropic
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from config import AgentConfig
from exceptions import AgentServiceError

COMPUTER_USE_BETA = "computer-use-2025-01-24"

# Failures worth another attempt; everything else is fatal for the run.
TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class AgentClient(Protocol):
    """What the execution loop needs from the remote agent."""

    async def create_message(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system: Optional[str] = None,
    ) -> Any:
        """Return a response whose ``content`` is a list of text/tool_use blocks."""
        ...


class AnthropicAgentClient:
    """Messages API client with the computer-use beta enabled."""

    def __init__(
        self,
        config: AgentConfig,
        client: Optional[anthropic.AsyncAnthropic] = None,
        wait: Optional[wait_base] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger("agent_client")
        self.wait = wait or wait_exponential(multiplier=2.0, min=2.0, max=10)
        if client is None:
            if not config.api_key:
                raise AgentServiceError("ANTHROPIC_API_KEY is not set", model=config.model)
            client = anthropic.AsyncAnthropic(
                api_key=config.api_key,
                base_url=config.base_url,
                timeout=config.request_timeout,
                max_retries=0,
            )
        self.client = client

    async def create_message(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system: Optional[str] = None,
    ) -> Any:
        kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "tools": tools,
            "messages": messages,
            "betas": [COMPUTER_USE_BETA],
        }
        if system:
            kwargs["system"] = system

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.retry_attempts),
                wait=self.wait,
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=False,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self.logger.warning(
                            f"Retrying agent request (attempt {attempt.retry_state.attempt_number})"
                        )
                    return await self.client.beta.messages.create(**kwargs)
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise AgentServiceError(
                f"Agent service unavailable after {self.config.retry_attempts} attempts: {cause}",
                model=self.config.model,
            ) from cause
        except anthropic.APIError as e:
            raise AgentServiceError(f"Agent service error: {e}", model=self.config.model) from e
        raise AgentServiceError("Agent service returned no response", model=self.config.model)
