"""The Index and its pipeline stages."""

from webextract.index.engine import Index
from webextract.index.recall import HybridRecall, calculate_weights, has_specific_terms
from webextract.index.strategy import StrategyClassifier, classify_query
from webextract.index.summarizer import Summarizer

__all__ = [
    "HybridRecall",
    "Index",
    "StrategyClassifier",
    "Summarizer",
    "calculate_weights",
    "classify_query",
    "has_specific_terms",
]
