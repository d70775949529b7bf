"""Model endpoints for toolchat.

Public surface
--------------
- :class:`ModelEndpoint`: protocol the conversation loop calls
- :class:`OpenAICompatibleEndpoint`: OpenAI / compatible adapter (openai SDK)
"""

from __future__ import annotations

from toolchat.providers.base import ModelEndpoint
from toolchat.providers.openai import OpenAICompatibleEndpoint, normalize_base_url

__all__ = ["ModelEndpoint", "OpenAICompatibleEndpoint", "normalize_base_url"]
