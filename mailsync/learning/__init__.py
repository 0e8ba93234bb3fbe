"""Learning jobs over the message index."""

from .analyzer import AnalysisItem, BatchOutcome, OllamaPatternAnalyzer, PatternAnalyzer
from .pipeline import LearningPipeline

__all__ = [
    "AnalysisItem",
    "BatchOutcome",
    "PatternAnalyzer",
    "OllamaPatternAnalyzer",
    "LearningPipeline",
]
