"""
Shared fixtures: scripted fakes for the model collaborators and a mongomock
case store, so no test touches Gemini, Nominatim or a real MongoDB.
"""

import os
import sys

import mongomock
import pytest

# Run from backend/ so imports resolve
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db import CaseStore
from errors import ClassificationError, ExtractionError
from events import Broadcaster
from services.priority import CATEGORY_LABELS, PriorityClassifier
from services.session import SessionStore
from services.triage import DialogueEngine


class ScriptedExtractor:
    """
    Plays back canned extraction answers in order. An Exception instance in
    the script is raised instead of returned. Records every prompt it saw.
    """

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    def extract(self, prompt):
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError("extractor called more times than scripted")
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    @property
    def calls(self):
        return len(self.prompts)


class FakeZeroShot:
    """Always picks the category at `level` (1-5) with `score`."""

    ready = True

    def __init__(self, level=3, score=0.6, error=None):
        self.level = level
        self.score = score
        self.error = error
        self.calls = 0

    def classify(self, text, labels):
        self.calls += 1
        if self.error:
            raise self.error
        return labels[self.level - 1], self.score


class FakeGeocoder:
    def __init__(self, forward=None, reverse=None):
        self._forward = forward
        self._reverse = reverse
        self.forward_calls = []

    def forward(self, address):
        self.forward_calls.append(address)
        return self._forward

    def reverse(self, lat, lon):
        return self._reverse


def extraction_failure():
    return ExtractionError("Gemini failed after 3 attempts: timeout")


def classification_failure():
    return ClassificationError("model offline")


@pytest.fixture
def collection():
    return mongomock.MongoClient(tz_aware=True)["dispatch_test"]["calls"]


@pytest.fixture
def cases(collection):
    return CaseStore(collection)


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def zero_shot():
    return FakeZeroShot(level=3, score=0.6)


@pytest.fixture
def classifier(zero_shot):
    return PriorityClassifier(zero_shot, CATEGORY_LABELS)


@pytest.fixture
def make_engine(sessions, classifier, cases, broadcaster):
    """Factory: make_engine(*answers, geocoder=None) -> (engine, extractor)."""

    def _make(*answers, geocoder=None, retry_budget=None):
        extractor = ScriptedExtractor(*answers)
        engine = DialogueEngine(
            sessions,
            extractor,
            classifier,
            cases=cases,
            broadcaster=broadcaster,
            geocoder=geocoder,
            retry_budget=retry_budget,
        )
        return engine, extractor

    return _make
