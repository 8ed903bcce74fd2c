"""LLM-backed agent: answers broker messages through an ILLMProvider."""

import json
import re
from typing import Iterable

from ..llm import ILLMProvider
from ..logging_config import get_logger
from ..models import Message

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are {agent_id}, an AI team member with these skills: {capabilities}. "
    "You receive a task name and its context as JSON. "
    "Answer with a single JSON object holding your result and nothing else."
)

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def parse_reply(text: str) -> dict:
    """Extract a JSON object from model output, falling back to raw text."""
    candidates = [text.strip()]
    match = _JSON_BLOCK.search(text)
    if match:
        candidates.insert(0, match.group(1))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
        return {"result": parsed}

    return {"text": text}


class LLMAgent:
    """Agent whose replies are generated by a language model."""

    def __init__(
        self,
        agent_id: str,
        capabilities: Iterable[str],
        llm_provider: ILLMProvider,
        system_prompt: str | None = None,
        max_tokens: int = 2048,
    ):
        self._agent_id = agent_id
        self._capabilities = frozenset(capabilities)
        self._llm = llm_provider
        self._system_prompt = (system_prompt or DEFAULT_SYSTEM_PROMPT).format(
            agent_id=agent_id,
            capabilities=", ".join(sorted(self._capabilities)),
        )
        self._max_tokens = max_tokens

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def capabilities(self) -> frozenset[str]:
        return self._capabilities

    async def handle(self, message: Message) -> dict:
        """Send the message content to the LLM and parse its answer."""
        content = message.to_dict()["content"]
        step = message.metadata.get("step", "task")
        logger.info(
            "LLMAgent %s handling step %s from %s", self._agent_id, step, message.sender_id
        )

        text = await self._llm.complete(
            messages=[{"role": "user", "content": content}],
            system=self._system_prompt,
            max_tokens=self._max_tokens,
        )
        return parse_reply(text)
