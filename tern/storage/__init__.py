"""Storage module -- JSON files under the config directory.

Public API:
    ConversationStore - create/load/save/list/compact/delete conversations
    MemoryStore       - persistent notes with keyword tags
    CostTracker       - per-call usage log and cost statistics
"""

from tern.storage.conversations import ConversationStore, serialize
from tern.storage.memory import MemoryItem, MemoryStore, extract_tags
from tern.storage.usage import CallRecord, CostTracker, ModelPricing, ModelUsage, UsageStatistics

__all__ = [
    "CallRecord",
    "ConversationStore",
    "CostTracker",
    "MemoryItem",
    "MemoryStore",
    "ModelPricing",
    "ModelUsage",
    "UsageStatistics",
    "extract_tags",
    "serialize",
]
