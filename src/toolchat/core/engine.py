"""Engine: wires config + registry + model endpoint + overrides into a running bot."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from toolchat.core.config import user_key
from toolchat.core.loop import ConversationLoop
from toolchat.errors import AccessDeniedError, ConversationTimeoutError, StorageError
from toolchat.mcp.registry import SessionRegistry
from toolchat.providers.base import ModelEndpoint
from toolchat.providers.openai import OpenAICompatibleEndpoint
from toolchat.storage.overrides import MemoryOverrideStore, OverrideStore
from toolchat.types.config import AIConfig, AppConfig
from toolchat.types.messages import ChatMessage, ConversationResult

logger = logging.getLogger(__name__)

NEWS_SYSTEM_PROMPT = (
    "You are a professional news anchor. Fetch the latest news and give a "
    "concise, clear summary."
)
NEWS_REQUEST = (
    "Search for today's latest news, summarize the key points and list the "
    "concrete events."
)
SEARCH_SYSTEM_PROMPT = (
    "You are a search assistant. Use the available tools to look up current "
    "information, then answer accurately and cite what you found."
)

# Accepted override keys -> AIConfig field
_OVERRIDE_FIELDS = {
    "key": "api_key",
    "api_key": "api_key",
    "model": "model",
    "url": "base_url",
    "base_url": "base_url",
    "provider": "provider",
}


def parse_assignments(tokens: Iterable[str]) -> dict[str, str]:
    """``["key=abc", "model=gpt-4o"]`` -> ``{"key": "abc", "model": "gpt-4o"}``.

    Tokens without ``=`` are skipped.
    """
    result: dict[str, str] = {}
    for token in tokens:
        name, sep, value = token.partition("=")
        if sep and name:
            result[name.strip().lower()] = value
    return result


class Engine:
    """The host: builds transcripts, picks model config, enforces deadlines.

    Usage::

        async with Engine(load_config()) as engine:
            reply = await engine.chat("telegram", "42", "What's the weather in Paris?")
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: SessionRegistry | None = None,
        endpoint: ModelEndpoint | None = None,
        overrides: OverrideStore | None = None,
    ):
        self.config = config
        self.registry = registry if registry is not None else SessionRegistry(config.proxy)
        self._endpoint: ModelEndpoint = (
            endpoint if endpoint is not None
            else OpenAICompatibleEndpoint(timeout=config.request_timeout)
        )
        self._overrides: OverrideStore = (
            overrides if overrides is not None else MemoryOverrideStore()
        )
        self._loop = ConversationLoop(self._endpoint, self.registry, config.max_iterations)
        self._timeout = config.request_timeout

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def start(self) -> dict[str, bool]:
        """Connect every configured tool provider."""
        if not self.config.mcp_servers:
            logger.info("No MCP servers configured")
            return {}
        status = await self.registry.connect_all(self.config.mcp_servers)
        logger.info(
            "Tool providers ready: %d/%d connected, %d tools",
            sum(status.values()), len(status), self.registry.tool_count,
        )
        return status

    async def close(self) -> None:
        await self.registry.close_all()
        aclose = getattr(self._endpoint, "aclose", None)
        if aclose is not None:
            await aclose()

    async def health_check(self) -> dict[str, bool]:
        return await self.registry.health_check()

    # ------------------------------------------------------------------
    # Conversation entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        transcript: Sequence[ChatMessage],
        max_iterations: int | None = None,
        formatting_instruction: str = "",
        *,
        model_config: AIConfig | None = None,
    ) -> ConversationResult:
        """Run one conversation under the end-to-end deadline.

        Raises:
            ConversationTimeoutError: The deadline elapsed.
            GenerationError: The model endpoint failed.
            IterationsExceededError: No final answer within the bound.
        """
        try:
            return await asyncio.wait_for(
                self._loop.run(
                    transcript,
                    model_config or self.config.ai,
                    max_iterations=max_iterations,
                    formatting_instruction=formatting_instruction,
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            logger.error("Conversation timed out after %.0fs", self._timeout)
            raise ConversationTimeoutError(self._timeout) from exc

    async def run_conversation(
        self,
        transcript: Sequence[ChatMessage],
        max_iterations: int | None = None,
        formatting_instruction: str = "",
        *,
        model_config: AIConfig | None = None,
    ) -> str:
        """Like :meth:`run` but returns only the final answer text."""
        result = await self.run(
            transcript, max_iterations, formatting_instruction, model_config=model_config,
        )
        return result.text

    async def chat(self, platform: str, user_id: str, text: str) -> str:
        """Answer a free-form message from *user_id* on *platform*.

        Raises:
            AccessDeniedError: The user is not on an allow-list.
        """
        key = self._authorize(platform, user_id)
        model_config = self.effective_config(key)
        persona = self.config.persona_for(key)
        if persona is not None:
            logger.debug("Using persona %r for %s", persona.name, key)
            system_prompt = persona.prompt
        else:
            system_prompt = model_config.default_prompt
        return await self.run_conversation(
            [ChatMessage.system(system_prompt), ChatMessage.user(text)],
            formatting_instruction=self.config.platform_prompt(platform),
            model_config=model_config,
        )

    async def news(self, platform: str, user_id: str) -> str:
        """Fetch and summarize today's news for the user."""
        key = self._authorize(platform, user_id)
        return await self.run_conversation(
            [ChatMessage.system(NEWS_SYSTEM_PROMPT), ChatMessage.user(NEWS_REQUEST)],
            formatting_instruction=self.config.platform_prompt(platform),
            model_config=self.effective_config(key),
        )

    async def search(self, platform: str, user_id: str, query: str) -> str:
        """Answer *query* with the search-assistant persona."""
        key = self._authorize(platform, user_id)
        return await self.run_conversation(
            [ChatMessage.system(SEARCH_SYSTEM_PROMPT), ChatMessage.user(query)],
            formatting_instruction=self.config.platform_prompt(platform),
            model_config=self.effective_config(key),
        )

    async def handle_message(self, platform: str, user_id: str, text: str) -> str | None:
        """Dispatch a raw chat message the way a platform adapter would.

        ``/news``, ``/s <query>``, ``/set_ai k=v ...`` and ``/reset_ai`` are
        commands; other ``/`` messages are not for this engine and yield
        None; anything else is chat.
        """
        stripped = text.strip()
        if not stripped.startswith("/"):
            return await self.chat(platform, user_id, stripped)

        command, _, rest = stripped.partition(" ")
        command = command.lower()
        rest = rest.strip()
        if command == "/news":
            return await self.news(platform, user_id)
        if command == "/s":
            if not rest:
                return "Usage: /s <query>"
            return await self.search(platform, user_id, rest)
        if command == "/set_ai":
            updates = parse_assignments(rest.split())
            if not updates:
                return "Usage: /set_ai key=YOUR_KEY model=MODEL url=API_URL"
            try:
                self.update_override(user_key(platform, user_id), updates)
            except StorageError as exc:
                logger.error("Failed to save AI settings for %s:%s: %s", platform, user_id, exc)
                return f"Failed to save settings: {exc}"
            return "AI settings updated."
        if command == "/reset_ai":
            try:
                self.reset_override(user_key(platform, user_id))
            except StorageError as exc:
                logger.error("Failed to reset AI settings for %s:%s: %s", platform, user_id, exc)
                return f"Failed to save settings: {exc}"
            return "AI settings reset to the global defaults."
        return None

    # ------------------------------------------------------------------
    # Per-user configuration
    # ------------------------------------------------------------------

    def effective_config(self, key: str) -> AIConfig:
        """The user's stored override, or the global model config."""
        return self._overrides.get_override(key) or self.config.ai

    def update_override(self, key: str, updates: Mapping[str, str]) -> AIConfig:
        """Merge *updates* onto the user's effective config and store it.

        Accepted keys: ``key``/``api_key``, ``model``, ``url``/``base_url``,
        ``provider``. Others are ignored.
        """
        changes: dict[str, str] = {}
        for name, value in updates.items():
            field_name = _OVERRIDE_FIELDS.get(name.lower())
            if field_name is None:
                logger.debug("Ignoring unknown override key %r", name)
                continue
            changes[field_name] = value
        new_config = replace(self.effective_config(key), **changes)
        self._overrides.set_override(key, new_config)
        logger.info("Updated AI override for %s (%s)", key, ", ".join(sorted(changes)) or "no changes")
        return new_config

    def reset_override(self, key: str) -> None:
        self._overrides.clear_override(key)
        logger.info("Cleared AI override for %s", key)

    def _authorize(self, platform: str, user_id: str) -> str:
        if not self.config.is_allowed(platform, user_id):
            logger.warning("Rejected message from %s:%s", platform, user_id)
            raise AccessDeniedError(platform, user_id)
        return user_key(platform, user_id)
