"""
Case persistence on MongoDB.

A Case is the persisted projection of a call: derived from the live session on
every turn and upserted by id. The collection is injected so the same store runs
against a real MongoClient or mongomock in tests.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from bson.errors import BSONError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import MONGODB_DB, MONGODB_URI
from errors import PersistenceError

# Driver and encoding failures; bson raises OverflowError for ints past 8 bytes.
WRITE_ERRORS = (PyMongoError, BSONError, OverflowError)

logger = logging.getLogger(__name__)

OPEN = "open"
RESOLVED = "resolved"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """pymongo hands back naive UTC datetimes; make them comparable with ours."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def mask_number(phone_number: str) -> str:
    """Mask caller ID to last 4 digits."""
    if not phone_number:
        return "Unknown"
    return f"XXXXX-X{str(phone_number).strip()[-4:]}"


@dataclass
class Case:
    id: str
    emergency: Optional[str] = None
    priority: int = 0
    status: str = OPEN
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    name: Optional[str] = None
    location: Optional[str] = None
    number: Optional[str] = None
    caller_id: str = ""
    coordinates: Optional[dict] = None
    city: str = "Unknown"
    district: str = "Unknown"
    state: str = "Unknown"
    transcript: list = field(default_factory=list)
    in_progress: bool = True
    confidence: float = 0.0
    method: str = "none"
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def to_doc(self) -> dict:
        return {
            "id": self.id,
            "emergency": self.emergency,
            "priority": self.priority,
            "status": self.status,
            "createdAt": self.created_at,
            "name": self.name,
            "location": self.location,
            "number": self.number,
            "callerId": self.caller_id,
            "coordinates": self.coordinates,
            "city": self.city,
            "district": self.district,
            "state": self.state,
            "transcript": self.transcript,
            "inProgress": self.in_progress,
            "confidence": self.confidence,
            "method": self.method,
            "updatedAt": self.updated_at,
            "resolvedAt": self.resolved_at,
        }

    @classmethod
    def from_doc(cls, doc: dict) -> "Case":
        return cls(
            id=doc["id"],
            emergency=doc.get("emergency"),
            priority=int(doc.get("priority") or 0),
            status=doc.get("status", OPEN),
            created_at=_utc(doc.get("createdAt")),
            name=doc.get("name"),
            location=doc.get("location"),
            number=doc.get("number"),
            caller_id=doc.get("callerId", ""),
            coordinates=doc.get("coordinates"),
            city=doc.get("city", "Unknown"),
            district=doc.get("district", "Unknown"),
            state=doc.get("state", "Unknown"),
            transcript=doc.get("transcript") or [],
            in_progress=bool(doc.get("inProgress", False)),
            confidence=float(doc.get("confidence") or 0.0),
            method=doc.get("method", "none"),
            updated_at=_utc(doc.get("updatedAt")),
            resolved_at=_utc(doc.get("resolvedAt")),
        )

    def to_json(self) -> dict:
        """JSON-serializable shape for the API and SSE events."""
        data = self.to_doc()
        data["createdAt"] = _iso(self.created_at)
        data["updatedAt"] = _iso(self.updated_at)
        data["resolvedAt"] = _iso(self.resolved_at)
        data["numberMasked"] = mask_number(self.caller_id or self.number or "")
        return data


def get_calls_collection(uri: str = MONGODB_URI, db_name: str = MONGODB_DB):
    """Calls collection on the configured MongoDB (connects lazily)."""
    client = MongoClient(uri, tz_aware=True)
    return client[db_name]["calls"]


class CaseStore:
    """upsert / list_open / list_all / list_resolved / get / resolve over one collection."""

    def __init__(self, collection):
        self.collection = collection

    def upsert(self, case: Case):
        """
        Write the case by id. createdAt and status are only set on insert, so a
        re-save never moves a case in the queue or reopens a resolved one.
        """
        doc = case.to_doc()
        on_insert = {"createdAt": doc.pop("createdAt"), "status": doc.pop("status")}
        doc.pop("resolvedAt")
        doc["updatedAt"] = datetime.now(timezone.utc)
        try:
            self.collection.update_one(
                {"id": case.id},
                {"$set": doc, "$setOnInsert": on_insert},
                upsert=True,
            )
        except WRITE_ERRORS as e:
            raise PersistenceError(f"Could not save case {case.id}: {e}") from e

    def _find(self, query: dict) -> list:
        try:
            return [Case.from_doc(d) for d in self.collection.find(query, {"_id": 0})]
        except PyMongoError as e:
            raise PersistenceError(f"Could not read cases: {e}") from e

    def list_open(self) -> list:
        return self._find({"status": OPEN})

    def list_all(self) -> list:
        return self._find({})

    def list_resolved(self) -> list:
        """Resolved cases, most recently resolved first."""
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        cases = self._find({"status": RESOLVED})
        return sorted(cases, key=lambda c: c.resolved_at or oldest, reverse=True)

    def get(self, case_id: str) -> Optional[Case]:
        try:
            doc = self.collection.find_one({"id": case_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(f"Could not read case {case_id}: {e}") from e
        return Case.from_doc(doc) if doc else None

    def resolve(self, case_id: str) -> bool:
        """Mark an open case resolved. False if no open case has that id."""
        now = datetime.now(timezone.utc)
        try:
            result = self.collection.update_one(
                {"id": case_id, "status": OPEN},
                {"$set": {"status": RESOLVED, "inProgress": False, "resolvedAt": now, "updatedAt": now}},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not resolve case {case_id}: {e}") from e
        if result.matched_count:
            logger.info("[DB] Resolved case %s", case_id)
        return bool(result.matched_count)


def transcript_messages(turns: list) -> list:
    """
    Session turns -> message objects for the case document.

    Output format: [{"sender": "ai", "text": "Hello", "time": "14:02"}, ...]
    """
    messages = []
    for turn in turns:
        messages.append({
            "sender": "caller" if turn.speaker == "Caller" else "ai",
            "text": turn.text,
            "time": turn.at.strftime("%H:%M"),
        })
    return messages
