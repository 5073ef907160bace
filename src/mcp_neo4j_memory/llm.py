"""LLM client used by the ontology workflow, built on litellm."""

import json
import logging
import re
from typing import Any, Dict, Optional, Protocol

import litellm
from pydantic import BaseModel

from .config import LOGGER_NAME, MemoryConfig
from .errors import CollaboratorError

logger = logging.getLogger(LOGGER_NAME)

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


class LLMResponse(BaseModel):
    """Raw text of a completion and the JSON found in it, if any."""

    text: str = ""
    data: Optional[Any] = None


class TextGenerator(Protocol):
    async def generate(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> LLMResponse:
        ...


def _try_json(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_json(text: str) -> Optional[Any]:
    """
    Find JSON in free text.

    Tries, in order: the whole text, each fenced code block, and the span
    from the first ``{`` to the last ``}``. Returns None when nothing parses.
    """
    stripped = (text or "").strip()
    if not stripped:
        return None
    if stripped[0] in "{[":
        parsed = _try_json(stripped)
        if parsed is not None:
            return parsed

    for block in _FENCED_BLOCK.findall(stripped):
        parsed = _try_json(block.strip())
        if parsed is not None:
            return parsed

    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        return _try_json(stripped[start:end + 1])
    return None


def format_prompt(prompt: str, context: Optional[Dict[str, Any]] = None) -> str:
    """Append the context, when there is any, as a fenced JSON block."""
    if not context:
        return prompt
    return f"{prompt}\n\nContext:\n```json\n{json.dumps(context, indent=2, default=str)}\n```"


class LLMClient:
    """
    Text generator backed by any provider litellm supports.

    Args:
        model: Model in litellm's ``provider/model`` form
        temperature: Sampling temperature; low for more deterministic output
        max_tokens: Completion token limit
    """

    def __init__(self, model: str, temperature: float = 0.2, max_tokens: int = 32768):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "LLMClient":
        return cls(config.llm_model_id, config.llm_temperature, config.llm_max_tokens)

    async def generate(self, prompt: str, context: Optional[Dict[str, Any]] = None) -> LLMResponse:
        """
        Run a completion and extract JSON from its text.

        Raises:
            CollaboratorError: If the provider call fails
        """
        logger.debug("Making LLM call using model: %s", self.model)
        try:
            response = await litellm.acompletion(
                model=self.model,
                messages=[{"role": "user", "content": format_prompt(prompt, context)}],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.error("LLM API call failed: %s", e)
            raise CollaboratorError(f"LLM API call failed: {e}") from e

        content = ""
        if getattr(response, "choices", None):
            content = response.choices[0].message.content or ""
        data = extract_json(content)
        if data is None and content:
            logger.debug("LLM response did not contain parseable JSON")
        return LLMResponse(text=content, data=data)
