# application/services/complexity_classifier.py
import re
from typing import Dict, List, Optional, Sequence, Tuple

from domain.errors import ClassifierError
from domain.models.message import ConversationTurn, PreferenceSnapshot
from domain.models.routing import ComplexityAssessment, ModelTier, TaskShape
from shared.logging import logger

PATTERN_WEIGHT = 0.40
LINGUISTIC_WEIGHT = 0.35
CONTEXT_WEIGHT = 0.25

COMPLEX_TURN_SCORE = 7.0
CONTEXT_SMOOTHING = 0.6

SIMPLE_PATTERNS = [
    re.compile(r"^(add|create|show|list|find|get)\s+\w+"),
    re.compile(r"\b(supplier|product|contact)\b.*\b(email|phone|name)\b"),
    re.compile(r"^(what|who|when|where)\s+"),
]

STANDARD_PATTERNS = [
    re.compile(r"\b(update|modify|change)\b.*\bwhere\b"),
    re.compile(r"\b(filter|sort|group)\b"),
    re.compile(r"\bmultiple\b.*\b(criteria|conditions)\b"),
    re.compile(r"\b(analyze|compare|calculate)\b"),
]

COMPLEX_PATTERNS = [
    re.compile(r"\b(cross|join|relationship|correlation)\b"),
    re.compile(r"\b(if|then|else|when|unless)\b.*\b(and|or)\b"),
    re.compile(r"\b(optimize|recommend|suggest|predict)\b"),
    re.compile(r"\b(report|dashboard|visualization)\b"),
    re.compile(r"\bmultiple\b.*\b(tables|entities|sources)\b"),
]

DISCOURSE_CONNECTIVES = ("however", "therefore", "nevertheless", "furthermore", "moreover", "consequently")
LOGICAL_OPERATORS = ("and", "or", "but", "if", "then", "unless", "except")
DEFAULT_TECHNICAL_TERMS = ("database", "query", "relationship", "foreign key", "index", "aggregate", "pivot")

# indicator phrase -> external system that must be consulted for a correct answer
DEFAULT_EXTERNAL_INDICATORS: Dict[str, str] = {
    "order status": "ecommerce",
    "tracking": "ecommerce",
    "stock level": "erp",
    "in stock": "erp",
    "availability": "erp",
    "inventory": "erp",
    "price": "erp",
    "pricing": "erp",
    "account balance": "accounting",
    "invoice": "accounting",
    "payment status": "accounting",
}

TASK_SHAPE_KEYWORDS: List[Tuple[TaskShape, Tuple[str, ...]]] = [
    (TaskShape.CREATE, ("add", "create")),
    (TaskShape.UPDATE, ("update", "modify", "change")),
    (TaskShape.DELETE, ("delete", "remove", "cancel")),
    (TaskShape.SEARCH, ("find", "search", "show", "list")),
    (TaskShape.ANALYZE, ("analyze", "report", "calculate")),
]

FOLLOW_UP_MARKERS = ("and", "also")
FOLLOW_UP_MAX_WORDS = 15


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(r"\b" + re.escape(phrase) + r"\b", text) is not None


class ComplexityClassifier:
    """Scores a message for complexity; pure apart from logging"""

    def __init__(self, technical_terms: Sequence[str] = DEFAULT_TECHNICAL_TERMS,
                 external_indicators: Optional[Dict[str, str]] = None):
        self.technical_terms = tuple(technical_terms)
        self.external_indicators = dict(external_indicators or DEFAULT_EXTERNAL_INDICATORS)

    def score(self, text: str, recent_context: Sequence[ConversationTurn] = (),
              preferences: Optional[PreferenceSnapshot] = None) -> ComplexityAssessment:
        try:
            normalized = self._normalize(text)
        except ClassifierError as e:
            logger.warning("Classifier input rejected, scoring as lowest complexity", error=str(e))
            return ComplexityAssessment(
                pattern_score=0.0,
                linguistic_score=0.0,
                context_score=0.0,
                composite_score=0.0,
                task_shape=TaskShape.GENERAL,
                input_length=0,
                reasoning=(f"Input rejected: {e}",),
            )

        lowered = normalized.lower()
        technical_terms = self.technical_terms + (preferences.technical_terms if preferences else ())

        pattern = self._pattern_score(normalized, lowered)
        linguistic = self._linguistic_score(normalized, lowered, technical_terms)
        context = self._context_score(lowered, recent_context)
        composite = round(pattern * PATTERN_WEIGHT + linguistic * LINGUISTIC_WEIGHT + context * CONTEXT_WEIGHT, 4)

        external_systems = self._detect_external_systems(lowered, preferences)
        forced_tier = ModelTier.PREMIUM if external_systems else None

        reasoning = [
            f"Complexity score {composite:.2f}/10",
            f"Pattern analysis: {pattern:.1f}/10",
            f"Language complexity: {linguistic:.1f}/10",
            f"Context factors: {context:.1f}/10",
        ]
        if forced_tier:
            reasoning.append("External system data required: " + ", ".join(external_systems))

        return ComplexityAssessment(
            pattern_score=pattern,
            linguistic_score=linguistic,
            context_score=context,
            composite_score=composite,
            task_shape=self.extract_task_shape(lowered),
            input_length=len(normalized),
            forced_tier=forced_tier,
            external_systems=external_systems,
            reasoning=tuple(reasoning),
        )

    def _normalize(self, text) -> str:
        if not isinstance(text, str):
            raise ClassifierError(f"Expected text, got {type(text).__name__}")
        stripped = text.strip()
        if not stripped:
            raise ClassifierError("Empty message text")
        return stripped

    def _pattern_score(self, text: str, lowered: str) -> float:
        score = 0.0
        if any(pattern.search(lowered) for pattern in SIMPLE_PATTERNS):
            score = max(score, 2.0)
        if any(pattern.search(lowered) for pattern in STANDARD_PATTERNS):
            score = max(score, 5.0)
        if any(pattern.search(lowered) for pattern in COMPLEX_PATTERNS):
            score = max(score, 8.0)

        if score == 0:
            length = len(text)
            if length < 20:
                score = 1.0
            elif length < 100:
                score = 3.0
            elif length < 200:
                score = 6.0
            else:
                score = 8.0

        return min(10.0, score)

    def _linguistic_score(self, text: str, lowered: str, technical_terms: Sequence[str]) -> float:
        score = 0.0

        words = len(text.split())
        if words <= 5:
            score += 1
        elif words <= 15:
            score += 3
        elif words <= 30:
            score += 6
        else:
            score += 8

        sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
        if len(sentences) > 3:
            score += 2

        score += sum(1 for word in DISCOURSE_CONNECTIVES if word in lowered)

        padded = f" {' '.join(lowered.split())} "
        operators = sum(1 for op in LOGICAL_OPERATORS if f" {op} " in padded)
        score += min(3, operators)

        technical = sum(1 for term in technical_terms if term.lower() in lowered)
        score += min(2, technical)

        return min(10.0, float(score))

    def _context_score(self, lowered: str, recent_context: Sequence[ConversationTurn]) -> float:
        score = 3.0
        if not recent_context:
            return score

        prior_scores = [turn.composite_score for turn in recent_context if turn.composite_score is not None]

        if len(recent_context) > 5:
            score += 1
        if prior_scores and recent_context[-1].composite_score is not None \
                and recent_context[-1].composite_score > COMPLEX_TURN_SCORE:
            score += 2
        if any(s > COMPLEX_TURN_SCORE for s in prior_scores[:-1]):
            score += 1

        words = lowered.split()
        if len(words) <= FOLLOW_UP_MAX_WORDS and any(marker in words for marker in FOLLOW_UP_MARKERS):
            score += 2

        if prior_scores:
            score = max(score, CONTEXT_SMOOTHING * max(prior_scores))

        return min(10.0, round(score, 4))

    def _detect_external_systems(self, lowered: str,
                                 preferences: Optional[PreferenceSnapshot]) -> Tuple[str, ...]:
        indicators = dict(self.external_indicators)
        if preferences:
            for indicator in preferences.external_indicators:
                indicators.setdefault(indicator.lower(), "custom")

        systems: List[str] = []
        for phrase, system in indicators.items():
            if _contains_phrase(lowered, phrase) and system not in systems:
                systems.append(system)
        return tuple(sorted(systems))

    @staticmethod
    def extract_task_shape(lowered: str) -> TaskShape:
        for shape, keywords in TASK_SHAPE_KEYWORDS:
            if any(_contains_phrase(lowered, keyword) for keyword in keywords):
                return shape
        return TaskShape.GENERAL
