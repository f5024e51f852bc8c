"""
Abstract reasoning capability.

The Index depends only on this interface: one completion call and one
embedding call. Providers plug in behind it.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from webextract.utils.errors import ResponseParseError

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_json_response(text: str) -> Any:
    """
    Parse a JSON object or array from model output.

    Tolerates surrounding markdown code fences and leading or trailing prose
    around the outermost JSON value.

    Raises:
        ResponseParseError: If no JSON value can be decoded
    """
    cleaned = text.strip()
    fenced = _FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i >= 0]
    if starts:
        start = min(starts)
        closing = "}" if cleaned[start] == "{" else "]"
        end = cleaned.rfind(closing)
        if end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                pass

    raise ResponseParseError("Model response is not valid JSON", text)


class Reasoner(ABC):
    """Completion plus embedding capability."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        json_mode: bool = False,
    ) -> str:
        """
        Run one completion.

        Args:
            prompt: User prompt
            system: Optional system prompt
            json_mode: Ask the provider for a JSON response

        Returns:
            Response text

        Raises:
            CompletionError: If the provider call fails
        """
        pass

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts, one vector per input in the same order.

        Raises:
            EmbeddingError: If the provider call fails
        """
        pass

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Any:
        """
        Run a completion and parse its JSON output.

        Raises:
            CompletionError: If the provider call fails
            ResponseParseError: If the response is not JSON
        """
        text = await self.complete(prompt, system=system, json_mode=True)
        return parse_json_response(text)

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def close(self) -> None:
        return None
