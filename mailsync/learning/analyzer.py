"""
Pattern analyzers used by the learning pipeline.

An analyzer turns one message (index metadata plus hydrated body) into a
dictionary of writing patterns: category, tone, intent and the like. The
pipeline only relies on :meth:`PatternAnalyzer.analyze_batch`.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from mailsync.email.models import MessageBody, MessageIndexEntry

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = (
    "You analyze a single email and describe how it is written. "
    "Respond with a JSON object only, using these keys: "
    '"category" (short label such as newsletter, scheduling, support, personal), '
    '"tone" (formal, neutral or casual), '
    '"intent" (one sentence), '
    '"action_required" (true or false), '
    '"key_entities" (list of names, companies or products), '
    '"response_style" (how a reply from this mailbox should sound).'
)

MAX_BODY_CHARS = 6000


@dataclass
class AnalysisItem:
    """A message ready for analysis."""
    entry: MessageIndexEntry
    body: Optional[MessageBody] = None


@dataclass
class BatchOutcome:
    """
    Result of analyzing one batch.

    Attributes:
        patterns: Extracted patterns keyed by message id
        failed: Message ids whose analysis failed
    """
    patterns: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)


class PatternAnalyzer(ABC):
    """Base class for message pattern extraction."""

    @abstractmethod
    def analyze_message(self, entry: MessageIndexEntry, body: Optional[MessageBody]) -> Dict[str, Any]:
        """Return the patterns found in one message."""

    def analyze_batch(self, items: List[AnalysisItem]) -> BatchOutcome:
        """Analyze every item; a failing message is recorded and the rest continue."""
        outcome = BatchOutcome()
        for item in items:
            message_id = item.entry.message_id
            try:
                outcome.patterns[message_id] = self.analyze_message(item.entry, item.body)
            except Exception as exc:
                logger.warning(f"Pattern analysis failed for message {message_id}: {exc}")
                outcome.failed.append(message_id)
        return outcome


class OllamaPatternAnalyzer(PatternAnalyzer):
    """Extract patterns with a chat model served by Ollama."""

    def __init__(self, *, model: str, base_url: str, temperature: float = 0.1, llm: Any = None) -> None:
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self._llm = llm

    @property
    def llm(self) -> Any:
        if self._llm is None:
            logger.debug(f"Initializing LLM: {self.model} at {self.base_url}")
            self._llm = ChatOllama(model=self.model, base_url=self.base_url, temperature=self.temperature)
        return self._llm

    def analyze_message(self, entry: MessageIndexEntry, body: Optional[MessageBody]) -> Dict[str, Any]:
        content = self._format_message(entry, body)
        response = self.llm.invoke([SystemMessage(content=ANALYSIS_PROMPT), HumanMessage(content=content)])
        patterns = parse_patterns(str(response.content))
        patterns.setdefault("direction", entry.direction.value)
        return patterns

    @staticmethod
    def _format_message(entry: MessageIndexEntry, body: Optional[MessageBody]) -> str:
        text = ""
        if body is not None:
            text = body.text or re.sub(r"<[^>]+>", " ", body.html or "")
        if not text:
            text = entry.preview or ""
        lines = [
            f"Direction: {entry.direction.value}",
            f"From: {entry.sender or ''}",
            f"To: {', '.join(entry.recipients)}",
            f"Subject: {entry.subject or ''}",
            "",
            text[:MAX_BODY_CHARS],
        ]
        return "\n".join(lines)


def parse_patterns(raw: str) -> Dict[str, Any]:
    """Parse the model's JSON answer, tolerating a fenced code block.

    Raises:
        ValueError: The answer holds no JSON object
    """
    text = raw.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("analyzer response did not contain a JSON object")
    try:
        parsed = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ValueError(f"analyzer response was not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("analyzer response was not a JSON object")
    return parsed
