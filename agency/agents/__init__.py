"""Agents module."""

from .echo_agent import EchoAgent
from .llm_agent import LLMAgent, parse_reply

__all__ = ["EchoAgent", "LLMAgent", "parse_reply"]
