"""
Triage service: the dialogue engine that drives one call.

Flow per call (states in services/states.py):
  AWAIT_EMERGENCY -> AWAIT_LOCATION -> AWAIT_NAME -> AWAIT_NUMBER -> FOLLOWUP(0..4) -> TERMINATED

Every caller utterance:
  1. Lock the call's session (other calls are never blocked).
  2. Empty utterance (silence, low-confidence speech): re-prompt for the current
     state and keep listening. No model call, never hangs up.
  3. Otherwise append it to the transcript and run the handler for the current
     state: exactly one extraction call with that slot's prompt.
  4. Classify the emergency (once per turn) and save the derived Case.
  5. On hang-up: speak, hang up, and forget the session.

Model failures never advance a slot and never end the call during slot-filling;
the caller gets a generic re-prompt and the state stays put.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import EMERGENCY_LINE, SESSION_IDLE_SECONDS
from db import Case, transcript_messages
from errors import DialogueStateError, PersistenceError, SessionClosedError, TransientExternalFailure
from services.ai import emergency_prompt, followup_prompt, location_prompt, name_prompt, phone_prompt
from services.geocode import known_area
from services.priority import UNCLASSIFIED, ClassificationResult
from services.session import (
    CALLER,
    DISPATCHER,
    LOCATION_NOT_PROVIDED,
    NAME_NOT_PROVIDED,
    PHONE_INVALID,
    PHONE_NOT_PROVIDED,
    CallSession,
)
from services.states import TRANSITIONS, DialogueState

logger = logging.getLogger(__name__)


# =============================================================================
# Dialogue actions handed to the telephony layer
# =============================================================================

class Action(Enum):
    SPEAK = "speak"
    LISTEN = "listen"
    HANGUP = "hangup"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class DialogueAction:
    kind: Action
    text: str = ""

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value}
        if self.text:
            data["text"] = self.text
        return data


def keep_listening(line: str) -> list:
    return [DialogueAction(Action.SPEAK, line), DialogueAction(Action.LISTEN), DialogueAction(Action.REDIRECT)]


def end_call(line: str = "") -> list:
    actions = [DialogueAction(Action.SPEAK, line)] if line else []
    actions.append(DialogueAction(Action.HANGUP))
    return actions


@dataclass
class TurnResult:
    """Everything the voice route, the chat route and the dashboard need from one turn."""

    call_id: str
    spoken_line: str
    hang_up: bool
    actions: list
    state: DialogueState
    slots: dict = field(default_factory=dict)
    followup_count: int = 0
    classification: ClassificationResult = UNCLASSIFIED
    case: Optional[Case] = None

    def to_json(self) -> dict:
        return {
            "call_id": self.call_id,
            "spoken_line": self.spoken_line,
            "hang_up": self.hang_up,
            "state": self.state.value,
            "actions": [a.to_dict() for a in self.actions],
            "emergency": self.slots.get("emergency"),
            "location": self.slots.get("location"),
            "name": self.slots.get("name"),
            "number": self.slots.get("number"),
            "followup_count": self.followup_count,
            "classification": self.classification.to_dict(),
            "case": self.case.to_json() if self.case else None,
        }


# =============================================================================
# Scripted dispatcher lines
# =============================================================================

GREETING = f"{EMERGENCY_LINE}, what is your emergency?"

EMERGENCY_REPROMPT = "I need you to tell me what your emergency is. What's happening?"
EMERGENCY_RETRY = "I'm sorry, can you tell me again what your emergency is?"

ASK_LOCATION = (
    "Okay, stay calm. Can you tell me your exact location? "
    "Please include the street name, building number, or any nearby landmarks."
)
LOCATION_REPROMPTS = (
    "I need your exact location to send help. Can you tell me your address or where you are?",
    "Please help me understand where you are. What street, building, or landmark are you near?",
)
LOCATION_RETRY = "I'm sorry, I didn't catch that. Can you tell me your location again?"

ASK_NAME = "Okay, can I get your full name?"
NAME_REPROMPTS = (
    "I need your name for our records. Can you please tell me your full name, slowly and clearly?",
    "Please say your first name and last name, one word at a time.",
)
NAME_RETRY = "I'm sorry, I didn't catch that. Can you tell me your name again?"

ASK_PHONE = "And what's your phone number just in case we get disconnected?"
PHONE_REPROMPTS = (
    "I need your phone number in case we get disconnected. What's your number?",
    "Please tell me your phone number so we can stay connected.",
)
PHONE_FORMAT_REPROMPT = "Please repeat your 10 digit phone number slowly, one digit at a time."
PHONE_RETRY = "I'm sorry, I didn't catch that. Can you tell me your phone number again?"

DISPATCH_ACK = (
    "Thank you. I'm dispatching help to your location right now. Can you tell me more "
    "details about what's happening so I can give you the best guidance?"
)
FOLLOWUP_CONTINUE = "Can you provide more details about this emergency?"
CLOSING = (
    "Emergency services are already on the way to your location. I'm going to end this call "
    "now so we can dispatch the appropriate teams. Thank you for your information and for "
    f"calling {EMERGENCY_LINE}."
)

# Spoken when the caller says nothing (or Twilio can't make it out).
SILENCE_PROMPTS = {
    DialogueState.AWAIT_EMERGENCY: "I'm here to help. Can you tell me what's happening? What is the emergency?",
    DialogueState.AWAIT_LOCATION: "Are you still there? Please tell me where you are.",
    DialogueState.AWAIT_NAME: "Are you still there? Can I get your full name?",
    DialogueState.AWAIT_NUMBER: "Are you still there? What's your phone number?",
    DialogueState.FOLLOWUP: "Are you still there? Help is on the way. Tell me what's happening now.",
}

# Every line that never changes, for TTS pre-caching.
SCRIPTED_LINES = [
    GREETING,
    EMERGENCY_REPROMPT,
    EMERGENCY_RETRY,
    ASK_LOCATION,
    *LOCATION_REPROMPTS,
    LOCATION_RETRY,
    ASK_NAME,
    *NAME_REPROMPTS,
    NAME_RETRY,
    ASK_PHONE,
    *PHONE_REPROMPTS,
    PHONE_FORMAT_REPROMPT,
    PHONE_RETRY,
    DISPATCH_ACK,
    FOLLOWUP_CONTINUE,
    CLOSING,
    *SILENCE_PROMPTS.values(),
]

# Re-prompts allowed per slot before it gets its placeholder.
DEFAULT_RETRY_BUDGET = {"location": 2, "name": 2, "phone": 2, "phone_format": 3}

# Follow-up turns 0-3 are generated; turn 4 is CLOSING.
LAST_GENERATED_FOLLOWUP = 3


def normalize_phone(text: Optional[str]) -> Optional[str]:
    """Strip non-digits; exactly 10 digits -> "DDDDD-DDDDD", anything else -> None."""
    digits = re.sub(r"\D", "", text or "")
    if len(digits) != 10:
        return None
    return f"{digits[:5]}-{digits[5:]}"


def derive_case(session: CallSession, classification: ClassificationResult) -> Case:
    """Project a live session onto the persisted Case shape."""
    area = session.area or {}
    return Case(
        id=session.call_id,
        emergency=session.emergency,
        priority=classification.priority,
        created_at=session.created_at,
        name=session.name,
        location=session.location,
        number=session.number,
        caller_id=session.caller_id,
        coordinates=session.coordinates,
        city=area.get("city", "Unknown"),
        district=area.get("district", "Unknown"),
        state=area.get("state", "Unknown"),
        transcript=transcript_messages(session.transcript),
        in_progress=not session.hang_up,
        confidence=classification.confidence,
        method=classification.method,
    )


class DialogueEngine:
    """
    Runs turns for many concurrent calls. Collaborators:
      sessions    - SessionStore (per-call exclusive access)
      extractor   - anything with extract(prompt) -> str | None
      classifier  - PriorityClassifier
      cases       - CaseStore, optional
      broadcaster - events.Broadcaster, optional
      geocoder    - services.geocode.Geocoder, optional
    """

    def __init__(
        self,
        sessions,
        extractor,
        classifier,
        cases=None,
        broadcaster=None,
        geocoder=None,
        retry_budget: Optional[dict] = None,
        idle_seconds: float = SESSION_IDLE_SECONDS,
    ):
        self.sessions = sessions
        self.extractor = extractor
        self.classifier = classifier
        self.cases = cases
        self.broadcaster = broadcaster
        self.geocoder = geocoder
        self.retry_budget = dict(DEFAULT_RETRY_BUDGET, **(retry_budget or {}))
        self.idle_seconds = idle_seconds

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def start(self, call_id: str, caller_id: str = "") -> TurnResult:
        """Greeting turn. A repeat start for a live call re-prompts instead."""
        self.expire_idle()
        try:
            with self.sessions.acquire(call_id, caller_id) as session:
                if session.initialized:
                    line = SILENCE_PROMPTS.get(session.state, GREETING)
                else:
                    session.initialized = True
                    line = GREETING
                    logger.info("[Triage] Call %s started (caller %s)", call_id, caller_id or "unknown")
                session.add_turn(DISPATCHER, line)
                return self._finish_turn(session, line, stress=None)
        except SessionClosedError:
            return self._closed_result(call_id)

    def respond(self, call_id: str, utterance: Optional[str], stress: Optional[float] = None) -> TurnResult:
        """One caller utterance in, the dispatcher's reply and actions out."""
        try:
            with self.sessions.acquire(call_id) as session:
                if not session.initialized:
                    # The greeting was played before the session existed.
                    session.initialized = True
                    session.add_turn(DISPATCHER, GREETING)

                text = (utterance or "").strip()
                if not text:
                    line = SILENCE_PROMPTS[session.state]
                    logger.info("[Triage] Call %s: no speech in %s, re-prompting", call_id, session.state.value)
                else:
                    session.add_turn(CALLER, text)
                    handler = getattr(self, f"_handle_{session.state.value}")
                    line = handler(session)
                session.add_turn(DISPATCHER, line)
                return self._finish_turn(session, line, stress)
        except SessionClosedError:
            logger.info("[Triage] Call %s already ended; ignoring utterance", call_id)
            return self._closed_result(call_id)

    def advance(self, call_id: str, utterance: Optional[str]) -> tuple:
        """Returns (spoken_line, hang_up)."""
        result = self.respond(call_id, utterance)
        return result.spoken_line, result.hang_up

    def attach_coordinates(self, call_id: str, lat: float, lon: float, accuracy: Optional[float] = None) -> Case:
        """
        Record a device GPS fix for a call and reverse-geocode it. The address
        is only used if the caller never gives a location; the slot itself is
        never overwritten. Raises SessionClosedError for ended calls.
        """
        with self.sessions.acquire(call_id) as session:
            if accuracy is not None:
                accuracy = float(accuracy)
            session.coordinates = {"lat": lat, "lon": lon, "accuracy": accuracy, "source": "device-gps"}
            place = self.geocoder.reverse(lat, lon) if self.geocoder else None
            if place:
                session.gps_address = place["display_name"]
                session.area = {k: place[k] for k in ("city", "district", "state")}
            logger.info("[GPS] Call %s at %s, %s (accuracy %s)", call_id, lat, lon, accuracy)
            return self._save(session, self._classify(session, None))

    def abandon(self, call_id: str, reason: str = "caller hung up") -> Optional[Case]:
        """
        End a call from outside the dialogue (Twilio status callback, idle sweep).
        The case is saved as no longer in progress and the session is forgotten.
        Returns None when there is no live session for call_id.
        """
        if call_id not in self.sessions:
            return None
        try:
            with self.sessions.acquire(call_id) as session:
                logger.info("[Triage] Call %s ended in %s: %s", call_id, session.state.value, reason)
                session.hang_up = True
                self._move(session, DialogueState.TERMINATED)
                self.sessions.discard(call_id)
                return self._save(session, self._classify(session, None))
        except SessionClosedError:
            return None

    def expire_idle(self, now=None) -> list:
        """End every live call idle for longer than idle_seconds. Returns their ids."""
        return [
            call_id
            for call_id in self.sessions.idle(self.idle_seconds, now)
            if self.abandon(call_id, "idle timeout") is not None
        ]

    # -------------------------------------------------------------------------
    # Per-state handlers: one extraction call each
    # -------------------------------------------------------------------------

    def _extract(self, session: CallSession, prompt: str, slot: str):
        """Returns (value, failed)."""
        try:
            return self.extractor.extract(prompt), False
        except TransientExternalFailure as e:
            logger.warning("[Triage] Call %s: %s extraction failed: %s", session.call_id, slot, e)
            return None, True

    def _handle_await_emergency(self, session: CallSession) -> str:
        value, failed = self._extract(session, emergency_prompt(session.render_transcript()), "emergency")
        if failed:
            return EMERGENCY_RETRY
        if value is None:
            return EMERGENCY_REPROMPT
        session.fill("emergency", value)
        logger.info("[Triage] Call %s emergency: %s", session.call_id, value)
        self._move(session, DialogueState.AWAIT_LOCATION)
        return ASK_LOCATION

    def _handle_await_location(self, session: CallSession) -> str:
        value, failed = self._extract(session, location_prompt(session.render_transcript()), "location")
        if failed:
            return LOCATION_RETRY
        if value is None:
            reprompt = self._reprompt(session, "location", LOCATION_REPROMPTS)
            if reprompt:
                return reprompt
            session.fill("location", session.gps_address or LOCATION_NOT_PROVIDED)
        else:
            session.fill("location", self._resolve_location(session, value))
        logger.info("[Triage] Call %s location: %s", session.call_id, session.location)
        self._move(session, DialogueState.AWAIT_NAME)
        return ASK_NAME

    def _handle_await_name(self, session: CallSession) -> str:
        value, failed = self._extract(session, name_prompt(session.render_transcript()), "name")
        if failed:
            return NAME_RETRY
        if value is None:
            reprompt = self._reprompt(session, "name", NAME_REPROMPTS)
            if reprompt:
                return reprompt
            value = NAME_NOT_PROVIDED
        session.fill("name", value)
        logger.info("[Triage] Call %s name: %s", session.call_id, value)
        self._move(session, DialogueState.AWAIT_NUMBER)
        return ASK_PHONE

    def _handle_await_number(self, session: CallSession) -> str:
        value, failed = self._extract(session, phone_prompt(session.render_transcript()), "phone")
        if failed:
            return PHONE_RETRY

        if not re.sub(r"\D", "", value or ""):
            reprompt = self._reprompt(session, "phone", PHONE_REPROMPTS)
            if reprompt:
                return reprompt
            number = PHONE_NOT_PROVIDED
        else:
            number = normalize_phone(value)
            if number is None:
                reprompt = self._reprompt(session, "phone_format", (PHONE_FORMAT_REPROMPT,))
                if reprompt:
                    return reprompt
                number = PHONE_INVALID

        session.fill("number", number)
        logger.info("[Triage] Call %s number: %s", session.call_id, number)
        self._move(session, DialogueState.FOLLOWUP)
        session.followup_count = 0
        return DISPATCH_ACK

    def _handle_followup(self, session: CallSession) -> str:
        turn = session.followup_count
        if turn > LAST_GENERATED_FOLLOWUP:
            return self._close(session)

        prompt = followup_prompt(turn, session.render_transcript(), session.slots())
        line, failed = self._extract(session, prompt, f"follow-up {turn}")
        if failed or not line:
            if turn >= LAST_GENERATED_FOLLOWUP:
                return self._close(session)
            return FOLLOWUP_CONTINUE

        session.followup_count = turn + 1
        return line

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _reprompt(self, session: CallSession, counter: str, lines: tuple) -> Optional[str]:
        """Next re-prompt for a slot, or None once its budget is spent."""
        used = session.retries[counter]
        if used >= self.retry_budget[counter]:
            logger.info("[Triage] Call %s: %s retries exhausted", session.call_id, counter)
            return None
        session.retries[counter] = used + 1
        return lines[min(used, len(lines) - 1)]

    def _resolve_location(self, session: CallSession, spoken: str) -> str:
        """
        Geocoded display address when the lookup succeeds, else the spoken text
        (with its area taken from a known place name if there is one).
        """
        place = self.geocoder.forward(spoken) if self.geocoder else None
        if not place:
            area = known_area(spoken)
            if area and not session.area:
                session.area = area
            return spoken
        if not session.coordinates:
            session.coordinates = {"lat": place["lat"], "lon": place["lon"], "source": "geocode"}
        session.area = {k: place[k] for k in ("city", "district", "state")}
        return place["display_name"] or spoken

    def _move(self, session: CallSession, target: DialogueState):
        if session.state.is_terminal:
            raise DialogueStateError(f"Call {session.call_id} has already terminated")
        if target not in TRANSITIONS[session.state]:
            raise DialogueStateError(f"Illegal transition {session.state.value} -> {target.value}")
        session.state = target

    def _close(self, session: CallSession) -> str:
        session.hang_up = True
        return CLOSING

    def _classify(self, session: CallSession, stress: Optional[float]) -> ClassificationResult:
        """Classify at most once per (emergency, stress); later reads reuse it."""
        if stress is not None:
            session.stress = stress
        key = (session.emergency, session.stress)
        if session.classification is None or session.classified_for != key:
            session.classification = self.classifier.classify(session.emergency, session.stress)
            session.classified_for = key
        return session.classification

    def _save(self, session: CallSession, classification: ClassificationResult) -> Case:
        case = derive_case(session, classification)
        if self.cases is not None:
            try:
                self.cases.upsert(case)
            except PersistenceError as e:
                logger.error("[Triage] Call %s: case not saved: %s", session.call_id, e)
        if self.broadcaster is not None:
            self.broadcaster.notify({"type": "call_progress", "call": case.to_json()})
        return case

    def _finish_turn(self, session: CallSession, line: str, stress: Optional[float]) -> TurnResult:
        classification = self._classify(session, stress)

        # Terminate before saving so a failed write can't keep a closed call alive.
        if session.hang_up:
            self._move(session, DialogueState.TERMINATED)
            self.sessions.discard(session.call_id)
            actions = end_call(line)
            logger.info("[Triage] Call %s ended (priority %d)", session.call_id, classification.priority)
        else:
            actions = keep_listening(line)
        case = self._save(session, classification)

        return TurnResult(
            call_id=session.call_id,
            spoken_line=line,
            hang_up=session.hang_up,
            actions=actions,
            state=session.state,
            slots=session.slots(),
            followup_count=session.followup_count,
            classification=classification,
            case=case,
        )

    def _closed_result(self, call_id: str) -> TurnResult:
        return TurnResult(
            call_id=call_id,
            spoken_line="",
            hang_up=True,
            actions=end_call(),
            state=DialogueState.TERMINATED,
        )
