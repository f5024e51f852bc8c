"""Reasoning capability: completions and embeddings."""

from webextract.reasoning.base import Reasoner, parse_json_response
from webextract.reasoning.mock_reasoner import MockReasoner
from webextract.reasoning.openai_reasoner import OpenAIReasoner

__all__ = ["MockReasoner", "OpenAIReasoner", "Reasoner", "parse_json_response"]
