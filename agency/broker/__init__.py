"""Broker module."""

from .broker import IMessageBroker, MessageBroker
from .registry import AgentRegistry, IAgent

__all__ = ["AgentRegistry", "IAgent", "IMessageBroker", "MessageBroker"]
