"""
Companion Memory

Long-term conversational memory and relationship emotion state for AI
companions: rolling chat windows summarized into salience-scored
memories, similarity + salience retrieval, and a hysteresis-based mood
state machine.
"""

from .models import (
    ChatMessage,
    ChatWindow,
    EmotionState,
    Memory,
    MemorySummary,
    MemoryType,
    Mood,
    RetrievedMemory,
    Role,
    Scope,
    SentimentLabel,
)
from .config import MemoryConfig
from .config_loader import load_config
from .chat_window import AppendResult, ChatWindowAccumulator
from .embedding import EmbeddingService
from .emotion import EmotionService, EmotionStateMachine, mood_instruction
from .memory_service import MemoryService
from .pipeline import MemoryFormationPipeline
from .relationship import RelationshipLevel, RelationshipState
from .retrieval import MemoryRetriever, format_memories_block
from .salience import SalienceScorer
from .sentiment import SentimentAnalyzer, parse_roleplay_output, parse_sentiment_label

__all__ = [
    "ChatMessage",
    "ChatWindow",
    "EmotionState",
    "Memory",
    "MemorySummary",
    "MemoryType",
    "Mood",
    "RetrievedMemory",
    "Role",
    "Scope",
    "SentimentLabel",
    "MemoryConfig",
    "load_config",
    "AppendResult",
    "ChatWindowAccumulator",
    "EmbeddingService",
    "EmotionService",
    "EmotionStateMachine",
    "mood_instruction",
    "MemoryService",
    "MemoryFormationPipeline",
    "RelationshipLevel",
    "RelationshipState",
    "MemoryRetriever",
    "format_memories_block",
    "SalienceScorer",
    "SentimentAnalyzer",
    "parse_roleplay_output",
    "parse_sentiment_label",
]
