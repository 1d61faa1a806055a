"""
Priority classification for emergency text.

5-level system:
  1 = IMMEDIATE / LIFE-THREATENING
  2 = URGENT / HIGH RISK
  3 = SEMI-URGENT
  4 = NON-URGENT
  5 = INFORMATION / ROUTINE
  0 = not classified yet (no emergency text)

Pipeline, in order:
  1. No text -> 0, method "none".
  2. Semantic stage: zero-shot classifier picks one of CATEGORY_LABELS.
     Unavailable or failing -> rule-based fallback (4), method "fallback".
  3. Critical keywords force level 1 on top of the semantic result.
  4. Rule-based fallback: L1/L2/L3 keyword sets, first match wins, else L4.
  5. Caller stress above STRESS_THRESHOLD promotes by one level.

Steps 3-5 are deterministic; only the semantic score can vary between runs.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from google.genai import types

from config import (
    CLASSIFIER_TIMEOUT_SECONDS,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    PRIORITY_BACKEND,
    PRIORITY_HF_MODEL,
)
from errors import ClassificationError
from services.ai import make_gemini_client
from services.system_prompt import CLASSIFIER_INSTRUCTION

logger = logging.getLogger(__name__)

# Severity descending; index + 1 is the priority level.
CATEGORY_LABELS = (
    "fire emergency or building collapse or active shooter or cardiac arrest or drowning or severe trauma or sexual assault or rape",
    "medical emergency or severe injury or assault or armed threat",
    "minor injury or property crime or suspicious activity",
    "non-urgent issue or minor complaint",
    "information request or general inquiry",
)

CRITICAL_KEYWORDS = (
    "fire", "burning", "flames", "smoke", "explosion", "cardiac arrest", "heart attack",
    "not breathing", "unconscious", "drowning", "shooting", "gunshot", "stabbing",
    "active shooter", "armed attack", "stroke", "severe burn", "collapse",
    "sexual assault", "rape", "sexual violence", "sexual attack", "molest", "assault victim",
)

# Rule-based fallback tiers: (priority, confidence, label, keywords)
FALLBACK_TIERS = (
    (1, 0.9, "L1 critical", (
        "rape", "sexual assault", "unconscious", "cardiac arrest", "not breathing", "heart attack",
        "stroke", "severe burn", "fire", "active shooter", "kidnap", "drowning", "collapse",
        "shooting", "gunshot", "stabbing", "armed", "armed attack",
    )),
    (2, 0.85, "L2 urgent", (
        "fracture", "broken", "burglary", "missing person", "animal bite", "allergy", "asthma",
        "fever", "severe vomiting", "dehydration",
    )),
    (3, 0.8, "L3 semi-urgent", (
        "vomiting", "injury", "assault", "robbery", "suspicious", "minor accident",
    )),
)
FALLBACK_DEFAULT = (4, 0.7, "L4 non-urgent")

STRESS_THRESHOLD = 0.7

PRIORITY_LABELS = {
    1: "CRITICAL",
    2: "HIGH",
    3: "MEDIUM",
    4: "LOW",
    5: "INFO",
}


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "UNKNOWN")


@dataclass(frozen=True)
class ClassificationResult:
    priority: int
    confidence: float
    method: str
    label: str = ""
    critical_override: bool = False
    stress_adjusted: bool = False

    def to_dict(self) -> dict:
        return {
            "priority": self.priority,
            "confidence": self.confidence,
            "method": self.method,
            "label": self.label,
            "criticalOverride": self.critical_override,
            "stressAdjustment": self.stress_adjusted,
        }


UNCLASSIFIED = ClassificationResult(priority=0, confidence=0.0, method="none")


class ZeroShotClassifier(Protocol):
    """Picks the best of a fixed set of labels for a piece of text."""

    ready: bool

    def classify(self, text: str, labels: tuple) -> tuple:
        """Return (best_label, score in [0, 1])."""
        ...


def _has_text(text: Optional[str]) -> bool:
    return bool(text and text.strip() and text.strip().lower() != "undefined")


def has_critical_keyword(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in CRITICAL_KEYWORDS)


def rule_based_priority(text: str) -> ClassificationResult:
    """Keyword tiers L1-L3, first match wins, else L4. Never returns 5."""
    lower = text.lower()
    for priority, confidence, label, keywords in FALLBACK_TIERS:
        if any(word in lower for word in keywords):
            return ClassificationResult(priority=priority, confidence=confidence, method="fallback", label=label)
    priority, confidence, label = FALLBACK_DEFAULT
    return ClassificationResult(priority=priority, confidence=confidence, method="fallback", label=label)


class PriorityClassifier:
    """Runs the classification pipeline; zero_shot may be None (rule-based only)."""

    def __init__(self, zero_shot: Optional[ZeroShotClassifier] = None, labels: tuple = CATEGORY_LABELS):
        self.zero_shot = zero_shot
        self.labels = labels

    @property
    def semantic_available(self) -> bool:
        return self.zero_shot is not None and bool(getattr(self.zero_shot, "ready", False))

    def _semantic(self, text: str) -> Optional[ClassificationResult]:
        if not self.semantic_available:
            return None
        try:
            label, score = self.zero_shot.classify(text, self.labels)
        except Exception as e:
            logger.warning("[Priority] Semantic classifier failed, using rule-based fallback: %s", e)
            return None
        if label not in self.labels:
            logger.warning("[Priority] Semantic classifier returned unknown label %r", label)
            return None
        score = min(1.0, max(0.0, float(score)))
        return ClassificationResult(
            priority=self.labels.index(label) + 1,
            confidence=score,
            method="semantic",
            label=label,
        )

    def classify(self, text: Optional[str], stress: Optional[float] = None) -> ClassificationResult:
        if not _has_text(text):
            return UNCLASSIFIED

        result = self._semantic(text)
        if result is not None:
            critical = has_critical_keyword(text)
            if critical and result.priority > 1:
                logger.info("[Priority] Critical keyword detected, overriding %d -> 1", result.priority)
                result = ClassificationResult(
                    priority=1,
                    confidence=result.confidence,
                    method="critical_override",
                    label=result.label,
                    critical_override=True,
                )
            elif critical:
                result = ClassificationResult(
                    priority=1,
                    confidence=result.confidence,
                    method="semantic",
                    label=result.label,
                    critical_override=True,
                )
        else:
            result = rule_based_priority(text)

        if stress is not None and stress > STRESS_THRESHOLD:
            promoted = max(1, result.priority - 1)
            logger.info("[Priority] High stress (%.2f), promoting %d -> %d", stress, result.priority, promoted)
            result = ClassificationResult(
                priority=promoted,
                confidence=result.confidence,
                method=result.method,
                label=result.label,
                critical_override=result.critical_override,
                stress_adjusted=True,
            )

        logger.info(
            "[Priority] %s: level %d (%.0f%%) for %r",
            result.method, result.priority, result.confidence * 100, text,
        )
        return result


# -----------------------------------------------------------------------------
# Zero-shot backends
# -----------------------------------------------------------------------------

class GeminiZeroShot:
    """Zero-shot classification by asking Gemini to pick a numbered category."""

    def __init__(
        self,
        api_key: Optional[str] = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        timeout_seconds: float = CLASSIFIER_TIMEOUT_SECONDS,
        client=None,
    ):
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client
        self.ready = client is not None or bool(api_key)

    def _get_client(self):
        if self._client is None:
            self._client = make_gemini_client(self.api_key, self.timeout_seconds)
        return self._client

    def classify(self, text: str, labels: tuple) -> tuple:
        numbered = "\n".join(f"{i}. {label}" for i, label in enumerate(labels, start=1))
        prompt = f"""Categories:
{numbered}

Emergency: {text}

Return JSON {{"category": <number 1-{len(labels)}>, "score": <confidence between 0 and 1>}}."""
        response = self._get_client().models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=CLASSIFIER_INSTRUCTION,
                temperature=0.0,
                response_mime_type="application/json",
            ),
        )
        try:
            data = json.loads(response.text or "")
            index = int(data["category"]) - 1
            score = float(data.get("score", 0.5))
        except (ValueError, KeyError, TypeError) as e:
            raise ClassificationError(f"Unparseable classifier response: {response.text!r}") from e
        if not 0 <= index < len(labels):
            raise ClassificationError(f"Category out of range: {index + 1}")
        return labels[index], score


class HuggingFaceZeroShot:
    """transformers zero-shot-classification pipeline, loaded once at startup."""

    def __init__(self, model: str = PRIORITY_HF_MODEL):
        self.model = model
        self.ready = False
        self._pipeline = None

    def load(self) -> bool:
        try:
            from transformers import pipeline

            logger.info("[Priority] Loading zero-shot model %s...", self.model)
            self._pipeline = pipeline("zero-shot-classification", model=self.model)
            self.ready = True
            logger.info("[Priority] Zero-shot model ready")
        except Exception as e:
            logger.error("[Priority] Failed to load zero-shot model, rule-based fallback only: %s", e)
            self.ready = False
        return self.ready

    def classify(self, text: str, labels: tuple) -> tuple:
        if self._pipeline is None:
            raise ClassificationError("Zero-shot model is not loaded")
        output = self._pipeline(text, candidate_labels=list(labels), multi_label=False)
        return output["labels"][0], float(output["scores"][0])


def build_zero_shot(backend: str = PRIORITY_BACKEND) -> Optional[ZeroShotClassifier]:
    if backend == "none":
        return None
    if backend == "huggingface":
        model = HuggingFaceZeroShot()
        model.load()
        return model
    if backend == "gemini":
        return GeminiZeroShot()
    raise ValueError(f"Unknown PRIORITY_BACKEND {backend!r}")
