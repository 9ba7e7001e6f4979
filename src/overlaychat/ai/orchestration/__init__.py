"""Streaming chat orchestration: decoder, tool dispatcher, and the turn state machine."""

from .chat_orchestrator import ChatState, ConversationOrchestrator
from .epoch import RequestEpochTracker
from .model_types import (
    STALE,
    AssistantReply,
    ChunkEvent,
    ChunkMessage,
    DisplayList,
    DisplayMessage,
    Err,
    Message,
    Ok,
    Outcome,
    Stale,
    ToolCall,
    ToolCallBatch,
    ToolUsage,
)
from .stream_decoder import StreamDecoder
from .tool_dispatcher import ToolDispatcher

__all__ = [
    "ChatState",
    "ConversationOrchestrator",
    "RequestEpochTracker",
    "STALE",
    "AssistantReply",
    "ChunkEvent",
    "ChunkMessage",
    "DisplayList",
    "DisplayMessage",
    "Err",
    "Message",
    "Ok",
    "Outcome",
    "Stale",
    "ToolCall",
    "ToolCallBatch",
    "ToolUsage",
    "StreamDecoder",
    "ToolDispatcher",
]
