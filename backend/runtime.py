"""
Wires the triage components together once per process.

The Flask app keeps one Runtime in app.extensions["runtime"]; tests build their
own with fakes and mongomock and hand it to create_app().
"""

import logging
from dataclasses import dataclass
from typing import Optional

from db import CaseStore, get_calls_collection
from events import Broadcaster
from services.ai import build_extractor
from services.dispatch_queue import DispatchQueue
from services.geocode import Geocoder
from services.priority import PriorityClassifier, build_zero_shot
from services.session import SessionStore
from services.triage import DialogueEngine

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    engine: DialogueEngine
    sessions: SessionStore
    cases: CaseStore
    queue: DispatchQueue
    broadcaster: Broadcaster
    classifier: PriorityClassifier
    geocoder: Optional[Geocoder] = None


def build_runtime(
    collection=None,
    extractor=None,
    zero_shot=None,
    geocoder: Optional[Geocoder] = None,
    retry_budget: Optional[dict] = None,
) -> Runtime:
    """
    Build every collaborator, defaulting to the configured production ones.
    Pass collection/extractor/zero_shot/geocoder to substitute fakes.
    """
    if collection is None:
        collection = get_calls_collection()
    if extractor is None:
        extractor = build_extractor()
    if zero_shot is None:
        zero_shot = build_zero_shot()
    if geocoder is None:
        geocoder = Geocoder()

    sessions = SessionStore()
    cases = CaseStore(collection)
    broadcaster = Broadcaster()
    classifier = PriorityClassifier(zero_shot)
    engine = DialogueEngine(
        sessions,
        extractor,
        classifier,
        cases=cases,
        broadcaster=broadcaster,
        geocoder=geocoder,
        retry_budget=retry_budget,
    )
    logger.info(
        "[Runtime] Ready (extractor=%s, semantic classifier=%s)",
        type(extractor).__name__,
        "on" if classifier.semantic_available else "off",
    )
    return Runtime(
        engine=engine,
        sessions=sessions,
        cases=cases,
        queue=DispatchQueue(cases),
        broadcaster=broadcaster,
        classifier=classifier,
        geocoder=geocoder,
    )
