"""
Centralized config for the triage backend.
Loads API keys, model names, timeouts and retry budgets from environment; no secrets in code.
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Spoken in the greeting and the closing line.
EMERGENCY_LINE = os.getenv("EMERGENCY_LINE", "112")

# Extraction model: "gemini" or "ollama"
EXTRACTION_BACKEND = os.getenv("EXTRACTION_BACKEND", "gemini")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
OLLAMA_API = os.getenv("OLLAMA_API", "http://localhost:11434/api/generate")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "neural-chat")

# A turn runs under its call's lock while Twilio waits about 15s for TwiML. With
# these defaults the slowest turn (3 extraction attempts of 3s, 0.5s + 1s backoff,
# then a 4s classification or a 3s geocode) stays just under that.
EXTRACTION_TIMEOUT_SECONDS = float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "3"))
EXTRACTION_MAX_ATTEMPTS = int(os.getenv("EXTRACTION_MAX_ATTEMPTS", "3"))
EXTRACTION_BACKOFF_SECONDS = float(os.getenv("EXTRACTION_BACKOFF_SECONDS", "0.5"))

# Priority classification: "gemini", "huggingface" or "none" (rule-based only)
PRIORITY_BACKEND = os.getenv("PRIORITY_BACKEND", "gemini")
PRIORITY_HF_MODEL = os.getenv("PRIORITY_HF_MODEL", "typeform/distilbert-base-uncased-mnli")
CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "4"))

# Live calls with no activity for this long are ended by the idle sweep.
SESSION_IDLE_SECONDS = float(os.getenv("SESSION_IDLE_SECONDS", "900"))

# MongoDB
MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "dispatch")

# Nominatim geocoding
GEOCODE_ENABLED = os.getenv("GEOCODE_ENABLED", "1").lower() in ("1", "true", "yes")
GEOCODE_URL = os.getenv("GEOCODE_URL", "https://nominatim.openstreetmap.org")
GEOCODE_REGION = os.getenv("GEOCODE_REGION", "")
GEOCODE_TIMEOUT_SECONDS = float(os.getenv("GEOCODE_TIMEOUT_SECONDS", "3"))
GEOCODE_USER_AGENT = os.getenv("GEOCODE_USER_AGENT", "dispatch-triage/1.0")
GEOCODE_CACHE_SIZE = int(os.getenv("GEOCODE_CACHE_SIZE", "512"))

# Twilio
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_LANGUAGE = os.getenv("TWILIO_LANGUAGE", "en-IN")
TWILIO_VOICE = os.getenv("TWILIO_VOICE", "Polly.Joanna-Neural")
MIN_SPEECH_CONFIDENCE = float(os.getenv("MIN_SPEECH_CONFIDENCE", "0.4"))
SPEECH_HINTS = os.getenv(
    "SPEECH_HINTS",
    "emergency, fire, accident, medical, police, ambulance, hospital, location, address, "
    "street, road, lane, opposite, near, building, injured, help, assault, robbery, "
    "burglary, shooting, stabbing, overdose, heart attack, stroke, seizure, breathing, "
    "unconscious, bleeding, apartment, house, sector, number",
)

# Gradium TTS
GRADIUM_API_KEY = os.getenv("GRADIUM_API_KEY")
GRADIUM_REGION = os.getenv("GRADIUM_REGION", "us")
GRADIUM_VOICE_ID = os.getenv("GRADIUM_VOICE_ID", "YTpq7expH9539ERJ")


def configure_logging(level: str = LOG_LEVEL):
    """Apply LOG_LEVEL to the root logger; called once at app start."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
