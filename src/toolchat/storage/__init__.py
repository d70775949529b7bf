"""Per-user persistent state."""

from toolchat.storage.overrides import JsonOverrideStore, MemoryOverrideStore, OverrideStore

__all__ = ["JsonOverrideStore", "MemoryOverrideStore", "OverrideStore"]
