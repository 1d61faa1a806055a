"""
Gradium TTS service: converts dispatcher text into WAV audio files
that Twilio can play back to the caller via <Play>.

Performance strategy:
  - All scripted dispatcher lines (triage.SCRIPTED_LINES) are pre-generated at
    startup and cached in memory. Most turns hit the cache.
  - Only model-generated follow-up lines hit the Gradium API at call time.
  - Pre-caching runs 4 requests at a time.
Without GRADIUM_API_KEY nothing is generated and the voice routes fall back to
Twilio <Say>.
"""

import asyncio
import logging
import os
import time
import uuid

import gradium

from config import GRADIUM_API_KEY, GRADIUM_REGION, GRADIUM_VOICE_ID
from services.triage import SCRIPTED_LINES

logger = logging.getLogger(__name__)

# Directory where generated audio files are stored.
AUDIO_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "audio_cache")

GRADIUM_BASE_URL = f"https://{GRADIUM_REGION}.api.gradium.ai/api/"

# text -> filename, filled at startup for scripted lines
_audio_cache: dict[str, str] = {}


def tts_available() -> bool:
    return bool(GRADIUM_API_KEY)


async def _tts(text: str) -> bytes:
    client = gradium.client.GradiumClient(
        api_key=GRADIUM_API_KEY,
        base_url=GRADIUM_BASE_URL,
    )
    result = await client.tts(
        setup={
            "model_name": "default",
            "voice_id": GRADIUM_VOICE_ID,
            "output_format": "wav",
        },
        text=text + " <flush>",
    )
    return result.raw_data


def _write(filename: str, audio_bytes: bytes):
    os.makedirs(AUDIO_DIR, exist_ok=True)
    with open(os.path.join(AUDIO_DIR, filename), "wb") as f:
        f.write(audio_bytes)


def generate_audio(text: str, label: str = "") -> str:
    """
    Convert *text* to a WAV file using Gradium TTS and return its filename.
    Scripted lines come straight from the startup cache.
    """
    if text in _audio_cache:
        logger.debug("[Gradium TTS] Cache hit: %.60s", text)
        return _audio_cache[text]
    if not tts_available():
        raise RuntimeError("GRADIUM_API_KEY is not set")

    tag = label.replace(" ", "_")[:20] if label else "resp"
    filename = f"{tag}_{uuid.uuid4().hex[:8]}.wav"

    t0 = time.time()
    _write(filename, asyncio.run(_tts(text)))
    logger.info("[Gradium TTS] Generated %s in %.1fs for: %.60s", filename, time.time() - t0, text)
    return filename


def precache_fixed_lines(lines: list = SCRIPTED_LINES):
    """Generate audio for every scripted dispatcher line, 4 at a time."""
    if not tts_available():
        logger.warning("[Startup] GRADIUM_API_KEY not set, skipping pre-cache; calls will use <Say>")
        return

    lines = list(dict.fromkeys(lines))
    logger.info("[Startup] Pre-caching %d scripted dispatcher lines...", len(lines))
    t_start = time.time()

    async def _precache_all():
        sem = asyncio.Semaphore(4)

        async def _limited(line: str) -> bytes:
            async with sem:
                return await _tts(line)

        return await asyncio.gather(*[_limited(line) for line in lines], return_exceptions=True)

    results = asyncio.run(_precache_all())

    for i, (line, audio) in enumerate(zip(lines, results)):
        if isinstance(audio, Exception):
            logger.warning("[Startup] Could not pre-cache %.55s: %s", line, audio)
            continue
        filename = f"cached_{i:02d}.wav"
        _write(filename, audio)
        _audio_cache[line] = filename

    logger.info("[Startup] Pre-cached %d lines in %.1fs", len(_audio_cache), time.time() - t_start)
