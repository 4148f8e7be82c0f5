"""Context module -- bounded turn buffer with structured compression.

Public API:
    ContextManager    - append/snapshot/compress/stats over the turn buffer
    ContextSnapshot   - immutable view sent upstream
    ContextStats      - usage accounting with advisory level
"""

from tern.context.compression import ImportanceScorer, TurnSummarizer
from tern.context.manager import ContextManager, ContextSnapshot, ContextStats, UsageLevel

__all__ = [
    "ContextManager",
    "ContextSnapshot",
    "ContextStats",
    "ImportanceScorer",
    "TurnSummarizer",
    "UsageLevel",
]
