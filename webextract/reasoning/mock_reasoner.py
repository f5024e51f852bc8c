"""
Deterministic reasoning capability for tests and offline runs.
"""

import hashlib
import json
import math
import re
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Tuple, Union

from webextract.reasoning.base import Reasoner

Response = Union[str, dict, list, Callable[[str], Any], BaseException]

SUMMARIZE_MARKER = "Summarize each webpage"

_PAGE_BLOCK_RE = re.compile(r"=== PAGE: (\S+) ===\n(.*?)(?=\n---\n=== PAGE: |\Z)", re.DOTALL)
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def hashed_embedding(text: str, dimension: int = 64) -> List[float]:
    """
    Bag-of-words vector with sha256 feature hashing.

    Texts sharing words get similar vectors, so similarity search behaves
    sensibly without a model.
    """
    vector = [0.0] * dimension
    for word in _WORD_RE.findall(text.lower()):
        digest = hashlib.sha256(word.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % dimension
        vector[index] += 1.0 if digest[4] % 2 == 0 else -1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


def echo_summaries(prompt: str) -> dict:
    """Summarize every page block in a batch prompt by echoing its opening text."""
    summaries = []
    for url, content in _PAGE_BLOCK_RE.findall(prompt):
        text = " ".join(content.split())[:300]
        summaries.append({
            "url": url,
            "summary": text,
            "signals": {"offers": [], "asks": [], "calls_to_action": [], "entities": []},
            "language": "en",
        })
    return {"summaries": summaries}


class MockReasoner(Reasoner):
    """
    Rule-driven fake.

    Completions come from, in order: the queue filled by ``enqueue``, the
    most recently registered rule whose marker occurs in the prompt, the
    built-in summarizer for summarization prompts, then ``default_response``.
    Responses may be strings, JSON-serializable objects, callables taking the
    prompt, or exceptions to raise.
    """

    def __init__(self, dimension: int = 64, default_response: Response = "{}") -> None:
        self.dimension = dimension
        self.default_response = default_response
        self.rules: List[Tuple[str, Response]] = []
        self.queue: Deque[Response] = deque()
        self.completion_calls: List[str] = []
        self.embed_calls: List[List[str]] = []

    def on(self, marker: str, response: Response) -> "MockReasoner":
        self.rules.append((marker, response))
        return self

    def enqueue(self, response: Response) -> "MockReasoner":
        self.queue.append(response)
        return self

    @property
    def call_count(self) -> int:
        return len(self.completion_calls) + len(self.embed_calls)

    def calls_matching(self, marker: str) -> List[str]:
        return [p for p in self.completion_calls if marker in p]

    def reset_calls(self) -> None:
        self.completion_calls.clear()
        self.embed_calls.clear()

    def _select(self, prompt: str) -> Response:
        if self.queue:
            return self.queue.popleft()
        for marker, response in reversed(self.rules):
            if marker in prompt:
                return response
        if SUMMARIZE_MARKER in prompt:
            return echo_summaries
        return self.default_response

    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        json_mode: bool = False,
    ) -> str:
        self.completion_calls.append(prompt)
        response = self._select(prompt)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(prompt)
        if isinstance(response, str):
            return response
        return json.dumps(response)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.embed_calls.append(list(texts))
        return [hashed_embedding(text, self.dimension) for text in texts]
