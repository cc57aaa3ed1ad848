"""Agent core: conversation model, compaction, sessions, queueing and runners.

Public API: RunnerRegistry + the building blocks it wires together.
"""

from rachel.agent.compaction import ConversationCompactor, Summarizer, TokenEstimator
from rachel.agent.models import Conversation, Message, Role
from rachel.agent.queue import ChatRequestQueue
from rachel.agent.registry import RunnerRegistry
from rachel.agent.runner import AgentRunner, PromptResult
from rachel.agent.session import SessionStore

__all__ = [
    "AgentRunner",
    "ChatRequestQueue",
    "Conversation",
    "ConversationCompactor",
    "Message",
    "PromptResult",
    "Role",
    "RunnerRegistry",
    "SessionStore",
    "Summarizer",
    "TokenEstimator",
]
