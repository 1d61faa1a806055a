"""
Per-call dialogue state and the store that hands it out.

One CallSession per active call id. The store gives a caller exclusive access
to one session at a time (a lock per call id), creates the session the first
time a call id is seen, and forgets it when the call ends. Ended call ids are
remembered for a while so a late Twilio retry can't resurrect the call.
"""

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from errors import DialogueStateError, SessionClosedError
from services.states import SLOT_ORDER, DialogueState

logger = logging.getLogger(__name__)

DISPATCHER = "Dispatcher"
CALLER = "Caller"


class Placeholder(str):
    """Terminal filler for a slot the caller never supplied."""


LOCATION_NOT_PROVIDED = Placeholder("Location not provided by caller")
NAME_NOT_PROVIDED = Placeholder("Name not provided by caller")
PHONE_NOT_PROVIDED = Placeholder("Phone number not provided by caller")
PHONE_INVALID = Placeholder("Invalid phone number provided")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    speaker: str
    text: str
    at: datetime = field(default_factory=utcnow)


@dataclass
class CallSession:
    """Holds all state for a single call until it hangs up."""

    call_id: str
    caller_id: str = ""
    initialized: bool = False
    hang_up: bool = False
    state: DialogueState = DialogueState.AWAIT_EMERGENCY

    # Re-prompts spent per slot; budgets live in the dialogue engine.
    retries: dict = field(default_factory=lambda: {"location": 0, "name": 0, "phone": 0, "phone_format": 0})
    followup_count: int = 0
    transcript: list = field(default_factory=list)

    emergency: Optional[str] = None
    location: Optional[str] = None
    name: Optional[str] = None
    number: Optional[str] = None
    coordinates: Optional[dict] = None
    # Device GPS display address and {city, district, state} from the geocoder.
    gps_address: Optional[str] = None
    area: Optional[dict] = None

    # Last stress score reported for the caller; carried across turns.
    stress: Optional[float] = None
    # Memoised ClassificationResult keyed by (emergency, stress).
    classification: object = None
    classified_for: Optional[tuple] = None

    created_at: datetime = field(default_factory=utcnow)
    # Touched every time the session is acquired; drives the idle sweep.
    last_activity: datetime = field(default_factory=utcnow)

    def add_turn(self, speaker: str, text: str) -> Turn:
        turn = Turn(speaker=speaker, text=text)
        self.transcript.append(turn)
        return turn

    def render_transcript(self) -> str:
        """Transcript as "Dispatcher: ...\\nCaller: ..." lines for prompts."""
        return "\n".join(f"{t.speaker}: {t.text}" for t in self.transcript)

    def fill(self, slot: str, value: str):
        """Set a slot exactly once. Slots never go back to unset or change value."""
        if slot not in SLOT_ORDER:
            raise DialogueStateError(f"Unknown slot {slot!r}")
        if self.hang_up:
            raise DialogueStateError(f"Call {self.call_id} has ended; cannot set {slot}")
        if getattr(self, slot) is not None:
            raise DialogueStateError(f"Slot {slot} already set for call {self.call_id}")
        if value is None:
            raise DialogueStateError(f"Slot {slot} cannot be filled with nothing")
        setattr(self, slot, value)

    def is_placeholder(self, slot: str) -> bool:
        return isinstance(getattr(self, slot), Placeholder)

    def slots(self) -> dict:
        return {slot: getattr(self, slot) for slot in SLOT_ORDER}


class SessionStore:
    """
    Thread-safe map of call id -> CallSession with a lock per call id.

    Usage:
        with store.acquire("CA123") as session:
            ...  # nobody else touches CA123 until the block exits
    """

    def __init__(self, closed_memory: int = 1024):
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._closed: OrderedDict[str, datetime] = OrderedDict()
        self._closed_memory = closed_memory
        self._guard = threading.Lock()

    def _lock_for(self, call_id: str) -> threading.Lock:
        with self._guard:
            if call_id in self._closed:
                raise SessionClosedError(f"Call {call_id} already ended")
            return self._locks.setdefault(call_id, threading.Lock())

    @contextmanager
    def acquire(self, call_id: str, caller_id: str = ""):
        """Exclusive access to the session for call_id, creating it on first use."""
        if not call_id:
            raise DialogueStateError("call_id is required")
        lock = self._lock_for(call_id)
        with lock:
            with self._guard:
                # The call may have ended while we waited on its lock.
                if call_id in self._closed:
                    raise SessionClosedError(f"Call {call_id} already ended")
                session = self._sessions.get(call_id)
                if session is None:
                    session = CallSession(call_id=call_id, caller_id=caller_id or "")
                    self._sessions[call_id] = session
                    logger.info("[Session] Created session for call %s", call_id)
                session.last_activity = utcnow()
            yield session

    def discard(self, call_id: str) -> bool:
        """Forget a finished call. Returns False if there was nothing to forget."""
        with self._guard:
            existed = self._sessions.pop(call_id, None) is not None
            self._locks.pop(call_id, None)
            self._closed[call_id] = utcnow()
            while len(self._closed) > self._closed_memory:
                self._closed.popitem(last=False)
        if existed:
            logger.info("[Session] Discarded session for call %s", call_id)
        return existed

    def idle(self, idle_seconds: float, now: Optional[datetime] = None) -> list:
        """Ids of live calls with no activity for longer than idle_seconds."""
        now = now or utcnow()
        with self._guard:
            return [
                call_id
                for call_id, session in self._sessions.items()
                if (now - session.last_activity).total_seconds() > idle_seconds
            ]

    def is_closed(self, call_id: str) -> bool:
        with self._guard:
            return call_id in self._closed

    def get(self, call_id: str) -> Optional[CallSession]:
        """Unlocked read for status listings; do not mutate the result."""
        with self._guard:
            return self._sessions.get(call_id)

    def active(self) -> list:
        with self._guard:
            return list(self._sessions.values())

    def __contains__(self, call_id: str) -> bool:
        with self._guard:
            return call_id in self._sessions

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)
