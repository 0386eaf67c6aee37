"""Agent-to-agent messaging channel."""

from agentlink.chat.dedup import LEDGER_CAPACITY, MessageDeduplicator, ProcessedLedger
from agentlink.chat.manager import ChatManager, register_agent

__all__ = [
    "LEDGER_CAPACITY",
    "ChatManager",
    "MessageDeduplicator",
    "ProcessedLedger",
    "register_agent",
]
