"""
Priority pipeline tests. The semantic stage is faked; everything after it
(critical override, fallback tiers, stress) is deterministic.
"""

import json
from types import SimpleNamespace

import pytest

from conftest import FakeZeroShot, classification_failure
from errors import ClassificationError
from services.priority import (
    CATEGORY_LABELS,
    GeminiZeroShot,
    HuggingFaceZeroShot,
    PriorityClassifier,
    build_zero_shot,
    priority_label,
    rule_based_priority,
)


@pytest.mark.parametrize("text", [None, "", "   ", "undefined"])
def test_no_text_is_unclassified(text):
    result = PriorityClassifier(FakeZeroShot(level=1)).classify(text)
    assert result.priority == 0
    assert result.confidence == 0.0
    assert result.method == "none"


@pytest.mark.parametrize("level", [1, 2, 3, 4, 5])
def test_fire_is_always_critical(level):
    result = PriorityClassifier(FakeZeroShot(level=level)).classify("there's a fire in the kitchen")
    assert result.priority == 1
    assert result.critical_override


def test_fire_is_critical_without_semantic_classifier():
    result = PriorityClassifier(None).classify("small fire near the bins")
    assert result.priority == 1
    assert result.method == "fallback"


def test_critical_override_reports_its_stage():
    result = PriorityClassifier(FakeZeroShot(level=4, score=0.55)).classify("he is not breathing")
    assert result.priority == 1
    assert result.method == "critical_override"
    assert result.confidence == 0.55


def test_semantic_result_without_keywords():
    result = PriorityClassifier(FakeZeroShot(level=5, score=0.8)).classify("what are your office hours")
    assert result.priority == 5
    assert result.method == "semantic"
    assert result.label == CATEGORY_LABELS[4]
    assert not result.critical_override


def test_semantic_level_one_keeps_semantic_method():
    result = PriorityClassifier(FakeZeroShot(level=1, score=0.9)).classify("building fire")
    assert result.method == "semantic"
    assert result.critical_override


@pytest.mark.parametrize("text, priority, confidence", [
    ("my friend is unconscious", 1, 0.9),
    ("I think my wrist is broken", 2, 0.85),
    ("there's someone suspicious outside", 3, 0.8),
    ("my neighbour's music is too loud", 4, 0.7),
])
def test_rule_based_tiers(text, priority, confidence):
    result = rule_based_priority(text)
    assert result.priority == priority
    assert result.confidence == confidence
    assert result.method == "fallback"


def test_failing_semantic_classifier_falls_back():
    zero_shot = FakeZeroShot(error=classification_failure())
    result = PriorityClassifier(zero_shot).classify("burglary at my shop")
    assert zero_shot.calls == 1
    assert result.priority == 2
    assert result.method == "fallback"


def test_unready_semantic_classifier_is_skipped():
    zero_shot = FakeZeroShot(level=5)
    zero_shot.ready = False
    result = PriorityClassifier(zero_shot).classify("question about a parking ticket")
    assert zero_shot.calls == 0
    assert result.method == "fallback"
    assert result.priority == 4


def test_unknown_label_falls_back():
    class Confused:
        ready = True

        def classify(self, text, labels):
            return "something else", 0.9

    assert PriorityClassifier(Confused()).classify("lost my wallet").method == "fallback"


@pytest.mark.parametrize("zero_shot", [None, FakeZeroShot(level=5), FakeZeroShot(level=3)])
@pytest.mark.parametrize("text", ["help", "someone took my bike", "my cat is stuck", "x"])
def test_non_empty_text_always_gets_a_level(zero_shot, text):
    assert PriorityClassifier(zero_shot).classify(text).priority in {1, 2, 3, 4, 5}


def test_fallback_never_produces_level_five():
    assert rule_based_priority("general inquiry about services").priority == 4


@pytest.mark.parametrize("stress, expected, adjusted", [
    (None, 3, False),
    (0.7, 3, False),
    (0.71, 2, True),
    (1.0, 2, True),
])
def test_stress_promotes_one_level(stress, expected, adjusted):
    result = PriorityClassifier(FakeZeroShot(level=3)).classify("minor car accident", stress=stress)
    assert result.priority == expected
    assert result.stress_adjusted is adjusted


def test_stress_promotion_is_floored_at_one():
    result = PriorityClassifier(None).classify("cardiac arrest", stress=0.95)
    assert result.priority == 1
    assert result.stress_adjusted


def test_same_input_follows_same_path():
    classifier = PriorityClassifier(FakeZeroShot(level=2, score=0.7))
    first = classifier.classify("assault in the parking lot", stress=0.8)
    second = classifier.classify("assault in the parking lot", stress=0.8)
    assert first == second


def test_to_dict_shape():
    data = PriorityClassifier(None).classify("fire", stress=0.9).to_dict()
    assert data == {
        "priority": 1,
        "confidence": 0.9,
        "method": "fallback",
        "label": "L1 critical",
        "criticalOverride": False,
        "stressAdjustment": True,
    }


def test_priority_labels():
    assert priority_label(1) == "CRITICAL"
    assert priority_label(5) == "INFO"
    assert priority_label(0) == "UNKNOWN"


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------

class FakeModels:
    def __init__(self, text):
        self.text = text
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        return SimpleNamespace(text=self.text)


def gemini_with(text):
    models = FakeModels(text)
    return GeminiZeroShot(api_key=None, model="gemini-test", client=SimpleNamespace(models=models)), models


def test_gemini_zero_shot_picks_numbered_category():
    zero_shot, models = gemini_with(json.dumps({"category": 2, "score": 0.74}))
    assert zero_shot.ready
    label, score = zero_shot.classify("he was hit with a bat", CATEGORY_LABELS)
    assert label == CATEGORY_LABELS[1]
    assert score == 0.74
    assert "he was hit with a bat" in models.calls[0]["contents"]
    assert models.calls[0]["config"].response_mime_type == "application/json"


@pytest.mark.parametrize("text", ["not json", json.dumps({"category": 9}), json.dumps({"score": 1})])
def test_gemini_zero_shot_rejects_bad_answers(text):
    zero_shot, _ = gemini_with(text)
    with pytest.raises(ClassificationError):
        zero_shot.classify("something", CATEGORY_LABELS)


def test_gemini_zero_shot_without_key_is_not_ready():
    assert not GeminiZeroShot(api_key=None).ready
    assert not PriorityClassifier(GeminiZeroShot(api_key=None)).semantic_available


def test_huggingface_pipeline_output_is_read():
    zero_shot = HuggingFaceZeroShot()
    zero_shot._pipeline = lambda text, candidate_labels, multi_label: {
        "labels": [candidate_labels[3], candidate_labels[0]],
        "scores": [0.61, 0.2],
    }
    zero_shot.ready = True
    assert zero_shot.classify("noise complaint", CATEGORY_LABELS) == (CATEGORY_LABELS[3], 0.61)


def test_huggingface_not_loaded_raises():
    with pytest.raises(ClassificationError):
        HuggingFaceZeroShot().classify("anything", CATEGORY_LABELS)


def test_build_zero_shot():
    assert build_zero_shot("none") is None
    assert isinstance(build_zero_shot("gemini"), GeminiZeroShot)
    with pytest.raises(ValueError):
        build_zero_shot("bogus")
