"""
LLM Provider (Semantic Kernel + Azure OpenAI)

Plain chat completion. The grounded context is the system message and
the channel's recent history follows it; no function calling, so the
model cannot reach the Ticketing API on its own.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from semantic_kernel import Kernel
from semantic_kernel.connectors.ai.open_ai import AzureChatCompletion, AzureChatPromptExecutionSettings
from semantic_kernel.contents import ChatHistory

from sr_assistant.agents.config.agent_config import AgentConfig
from sr_assistant.agents.grounding import GroundedContext
from sr_assistant.agents.models import Message, Role
from sr_assistant.core.errors import GenerationFailed

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, grounded: GroundedContext, history: Sequence[Message]) -> str: ...


def build_chat_history(grounded: GroundedContext, history: Sequence[Message], window: int = 20) -> ChatHistory:
    """System message from the grounded context, then the last ``window`` turns."""
    chat = ChatHistory()
    chat.add_system_message(grounded.to_system_message())
    for message in list(history)[-window:] if window > 0 else []:
        if message.role is Role.USER:
            chat.add_user_message(message.content)
        elif message.role is Role.ASSISTANT:
            chat.add_assistant_message(message.content)
        else:
            chat.add_system_message(message.content)
    return chat


class SemanticKernelGenerator:
    """Generates user-facing replies through an Azure OpenAI chat deployment."""

    SERVICE_ID = "chat"

    def __init__(self, config: AgentConfig, kernel: Kernel | None = None):
        self.config = config
        self._kernel = kernel or self._build_kernel()

    def _build_kernel(self) -> Kernel:
        kernel = Kernel()
        service = AzureChatCompletion(
            service_id=self.SERVICE_ID,
            deployment_name=self.config.azure_openai_deployment,
            endpoint=self.config.azure_openai_endpoint,
            api_key=self.config.azure_openai_api_key,
            api_version=self.config.azure_openai_api_version,
        )
        kernel.add_service(service)
        return kernel

    async def generate(self, grounded: GroundedContext, history: Sequence[Message]) -> str:
        service = self._kernel.get_service(self.SERVICE_ID)
        settings = AzureChatPromptExecutionSettings(
            service_id=self.SERVICE_ID,
            temperature=self.config.llm_temperature,
            max_tokens=self.config.llm_max_tokens,
        )
        chat = build_chat_history(grounded, history, window=self.config.llm_history_window)

        try:
            result = await asyncio.wait_for(
                service.get_chat_message_content(chat_history=chat, settings=settings),
                timeout=self.config.llm_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationFailed(f"LLM timed out after {self.config.llm_timeout}s") from e
        except Exception as e:
            raise GenerationFailed(f"LLM call failed: {e}") from e

        text = (getattr(result, "content", None) or "").strip() if result is not None else ""
        if not text:
            raise GenerationFailed("LLM returned an empty response")
        logger.debug(f"LLM reply ({len(text)} chars) for state={grounded.state.value}")
        return text
