"""
AI service: language-model calls for extraction (emergency, location, name, phone)
and generation (follow-up dispatcher lines).

Every prompt embeds the full transcript and is documented with intent and expected
output. The model answers "undefined" when the caller hasn't said something yet;
extract() turns that into None ("no value found").

Backends:
  - GeminiExtractor: google-genai SDK (client.models.generate_content).
  - OllamaExtractor: local Ollama /api/generate over HTTP.
Both retry transport failures with increasing backoff and raise ExtractionError
once the attempts are used up.
"""

import logging
import time
from typing import Callable, Optional

import requests
from google import genai
from google.genai import types

from config import (
    EXTRACTION_BACKEND,
    EXTRACTION_BACKOFF_SECONDS,
    EXTRACTION_MAX_ATTEMPTS,
    EXTRACTION_TIMEOUT_SECONDS,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    OLLAMA_API,
    OLLAMA_MODEL,
)
from errors import ExtractionError
from services.system_prompt import SYSTEM_INSTRUCTION

logger = logging.getLogger(__name__)

# Extraction outcome when the caller hasn't provided the value.
NO_VALUE = None

NO_VALUE_MARKERS = ("undefined", "no value found")


def make_gemini_client(api_key: Optional[str], timeout_seconds: float) -> genai.Client:
    """Gemini client with a per-request timeout (the SDK takes milliseconds)."""
    if not api_key:
        raise ValueError("GEMINI_API_KEY is not set")
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
    )


def interpret(text: Optional[str]) -> Optional[str]:
    """Normalize a raw model answer; empty or "undefined" means no value found."""
    if text is None:
        return NO_VALUE
    cleaned = text.strip().strip('"').strip("'").strip()
    if not cleaned:
        return NO_VALUE
    lower = cleaned.lower()
    if any(marker in lower for marker in NO_VALUE_MARKERS):
        return NO_VALUE
    return cleaned


# -----------------------------------------------------------------------------
# Few-shot constants: 2–3 examples per task so the model sees real-style
# inputs/outputs. Teaches "undefined" when the caller doesn't provide info.
# -----------------------------------------------------------------------------

FEW_SHOT_EMERGENCY = [
    ("Caller: My dad fell and he's not moving.", "fall, unresponsive person"),
    ("Caller: There's a fire in the kitchen!", "kitchen fire"),
    ("Caller: Hello? Hello?", "undefined"),
]

FEW_SHOT_LOCATION = [
    ("Caller: I'm at 235 MG Road, near the metro station.", "235 MG Road, near the metro station"),
    ("Caller: Opposite the police station in Sector 5.", "opposite the police station, Sector 5"),
    ("Caller: Just send help now! I can't think.", "undefined"),
]

FEW_SHOT_NAME = [
    ("Caller: Atharv Bhavsar.", "Atharv Bhavsar"),
    ("Caller: Just send help please.", "undefined"),
    ("Caller: It's 98765 43210.", "undefined"),
]

FEW_SHOT_PHONE = [
    ("Caller: 98765 43210.", "9876543210"),
    ("Caller: I can't remember right now.", "undefined"),
    ("Caller: It's nine eight seven six five, four three two one zero.", "9876543210"),
]


def _few_shot(examples: list, field_name: str) -> str:
    return "\n".join(f"Conversation: {c}\n{field_name}: {e}" for c, e in examples)


def emergency_prompt(transcript: str) -> str:
    """Nature of the emergency in 5 words or fewer; "undefined" if not stated yet."""
    return f"""You are a dispatch analyst. Extract only the nature of the emergency from the conversation, in 5 words or fewer. If the caller has not described any emergency, respond with exactly: undefined

Examples:
{_few_shot(FEW_SHOT_EMERGENCY, "Emergency type")}

Current conversation:
{transcript}

Emergency type (5 words or fewer, or "undefined"):"""


def location_prompt(transcript: str) -> str:
    """
    Caller's location/address. Pays attention to the last caller line, where the
    answer to "where are you?" usually is; partial places count.
    """
    return f"""You are a dispatch analyst. Extract ONLY the location or address from this emergency call.
Look for ANY mention of street names, road names, building names, landmarks, areas, neighborhoods, "opposite to", "near", or any place reference.
Pay special attention to the LAST thing the caller said. If you find ANY location information, even partial, return the COMPLETE location exactly as stated, combining all parts.
If there is absolutely NO location mentioned, respond with exactly: undefined

Examples:
{_few_shot(FEW_SHOT_LOCATION, "Location")}

Current conversation:
{transcript}

Location (address/place or "undefined"):"""


def name_prompt(transcript: str) -> str:
    """Caller's name from the answer after the dispatcher asked for it."""
    return f"""You are a dispatch analyst. Extract the caller's name from the conversation.
Look at what the caller said AFTER the dispatcher asked for their name. Numbers (like phone numbers) are NOT names.
If the caller does not give a name, respond with exactly: undefined

Examples:
{_few_shot(FEW_SHOT_NAME, "Name")}

Current conversation:
{transcript}

Name (or "undefined"):"""


def phone_prompt(transcript: str) -> str:
    """Caller's phone number as digits; spoken digit words are converted."""
    return f"""You are a dispatch analyst. Extract the caller's phone number from the conversation.
Look at what the caller said after the dispatcher asked for the phone number. Convert spoken digits to numerals.
Return ONLY the digits, or respond with exactly: undefined if no phone number was given.

Examples:
{_few_shot(FEW_SHOT_PHONE, "Phone")}

Current conversation:
{transcript}

Phone (digits or "undefined"):"""


# One instruction per model-generated follow-up turn (0-3). Turn 4 is scripted.
FOLLOWUP_INSTRUCTIONS = [
    "Ask for more specific details about the emergency situation. What exactly do they see? Are there any injuries?",
    "Ask follow-up questions about safety. Is everyone okay? Is anyone injured? Are there any hazards nearby?",
    "Ask additional operational details. Are emergency services needed for anything specific? Is traffic or access affected?",
    "Ask one more clarifying question to make sure you have all important details before the call ends.",
]


def followup_prompt(turn: int, transcript: str, slots: dict) -> str:
    """Next dispatcher line for follow-up turn 0-3, grounded in what was collected."""
    instruction = FOLLOWUP_INSTRUCTIONS[turn]
    return f"""You are an automated dispatch officer talking to a caller. Here is the conversation so far:

{transcript}

Emergency: {slots.get("emergency")}
Location: {slots.get("location")}
Name: {slots.get("name")}
Phone: {slots.get("number")}

Your job is to gather additional details and give the caller help and guidance; help is already being dispatched.
Be supportive, professional and helpful. Keep your response to 2-3 sentences maximum.

{instruction}

Dispatcher:"""


# -----------------------------------------------------------------------------
# Retry wrapper shared by both backends.
# -----------------------------------------------------------------------------

def call_with_retry(
    fn: Callable[[str], str],
    prompt: str,
    max_attempts: int = EXTRACTION_MAX_ATTEMPTS,
    backoff_seconds: float = EXTRACTION_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "LLM",
) -> str:
    """
    Call fn(prompt), retrying on any exception. Waits backoff * attempt between
    attempts (0.5s, 1s, ... by default). Raises ExtractionError after the last attempt.
    """
    attempts = max(1, max_attempts)
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return fn(prompt)
        except Exception as e:
            last_error = e
            logger.warning("[%s] Attempt %d/%d failed: %s", label, attempt, attempts, e)
            if attempt < attempts:
                sleep(backoff_seconds * attempt)
    logger.error("[%s] Failed after %d attempts", label, attempts)
    raise ExtractionError(f"{label} failed after {attempts} attempts: {last_error}") from last_error


class GeminiExtractor:
    """Extraction collaborator backed by Gemini."""

    def __init__(
        self,
        api_key: Optional[str] = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        timeout_seconds: float = EXTRACTION_TIMEOUT_SECONDS,
        max_attempts: int = EXTRACTION_MAX_ATTEMPTS,
        backoff_seconds: float = EXTRACTION_BACKOFF_SECONDS,
        client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._client = client
        self._sleep = sleep

    def _get_client(self):
        """Return configured Gemini client; initializes on first call."""
        if self._client is None:
            self._client = make_gemini_client(self.api_key, self.timeout_seconds)
        return self._client

    def _complete(self, prompt: str) -> str:
        response = self._get_client().models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=SYSTEM_INSTRUCTION,
                temperature=0.3,
            ),
        )
        return response.text or ""

    def extract(self, prompt: str) -> Optional[str]:
        raw = call_with_retry(
            self._complete,
            prompt,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self._sleep,
            label="Gemini",
        )
        return interpret(raw)


class OllamaExtractor:
    """Extraction collaborator backed by a local Ollama server."""

    def __init__(
        self,
        url: str = OLLAMA_API,
        model: str = OLLAMA_MODEL,
        timeout_seconds: float = EXTRACTION_TIMEOUT_SECONDS,
        max_attempts: int = EXTRACTION_MAX_ATTEMPTS,
        backoff_seconds: float = EXTRACTION_BACKOFF_SECONDS,
        http=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._http = http or requests.Session()
        self._sleep = sleep

    def _complete(self, prompt: str) -> str:
        resp = self._http.post(
            self.url,
            json={
                "model": self.model,
                "system": SYSTEM_INSTRUCTION,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": 0.7},
            },
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        text = (resp.json() or {}).get("response")
        if not text:
            raise ValueError("Ollama returned empty response")
        return text

    def extract(self, prompt: str) -> Optional[str]:
        raw = call_with_retry(
            self._complete,
            prompt,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self._sleep,
            label="Ollama",
        )
        return interpret(raw)


def build_extractor(backend: str = EXTRACTION_BACKEND):
    """Extractor for the configured backend ("gemini" or "ollama")."""
    if backend == "ollama":
        return OllamaExtractor()
    if backend == "gemini":
        return GeminiExtractor()
    raise ValueError(f"Unknown EXTRACTION_BACKEND {backend!r}")
