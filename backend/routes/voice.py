"""
Twilio voice webhooks.

Voice flow (turn-based):
  1. Caller dials the Twilio number -> Twilio POSTs to /voice
  2. We greet (Gradium TTS or <Say>) inside a <Gather>
  3. Caller speaks -> Twilio transcribes -> POSTs to /voice/respond
  4. The dialogue engine runs one turn; its actions are rendered to TwiML
  5. If the caller says nothing, <Redirect> lands on /voice/respond with no
     speech and the engine re-prompts.
  6. When the call ends, Twilio POSTs its status to /voice/status and any
     session still open is released.
These routes NEVER return 500: Twilio always gets valid TwiML.
"""

import logging
import time

from flask import Blueprint, current_app, request, send_from_directory
from twilio.twiml.voice_response import Gather, VoiceResponse

from config import MIN_SPEECH_CONFIDENCE, SPEECH_HINTS, TWILIO_LANGUAGE, TWILIO_VOICE
from services.triage import Action
from services.voice import AUDIO_DIR, generate_audio, tts_available

logger = logging.getLogger(__name__)

voice_bp = Blueprint("voice", __name__)

RESPOND_PATH = "/voice/respond"
STATUS_PATH = "/voice/status"
FALLBACK_LINE = "I'm sorry, could you repeat that?"

# Twilio CallStatus values after which the call is gone.
ENDED_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}


def twiml(response: VoiceResponse):
    return str(response), 200, {"Content-Type": "text/xml"}


def _gather() -> Gather:
    return Gather(
        input="speech",
        action=RESPOND_PATH,
        method="POST",
        speech_timeout="auto",
        language=TWILIO_LANGUAGE,
        hints=SPEECH_HINTS,
    )


def _speak(target, line: str, label: str):
    """<Play> generated audio, or <Say> when TTS is off or fails."""
    if tts_available():
        try:
            audio_file = generate_audio(line, label=label)
            target.play(f"{request.url_root}audio/{audio_file}")
            return
        except Exception as e:
            logger.warning("[Gradium ERROR] TTS failed, using <Say> fallback: %s", e)
    target.say(line, voice=TWILIO_VOICE, language=TWILIO_LANGUAGE)


def render_actions(actions: list, label: str = "dispatch") -> VoiceResponse:
    """
    Dialogue actions -> TwiML. A SPEAK followed by LISTEN is played inside the
    <Gather> so the caller can talk over it.
    """
    response = VoiceResponse()
    pending = None
    for action in actions:
        if action.kind is Action.SPEAK:
            pending = action.text
        elif action.kind is Action.LISTEN:
            gather = _gather()
            if pending:
                _speak(gather, pending, label)
                pending = None
            response.append(gather)
        else:
            if pending:
                _speak(response, pending, label)
                pending = None
            if action.kind is Action.HANGUP:
                response.hangup()
            elif action.kind is Action.REDIRECT:
                response.redirect(RESPOND_PATH, method="POST")
    if pending:
        _speak(response, pending, label)
    return response


def _safe_response(line: str = FALLBACK_LINE) -> VoiceResponse:
    response = VoiceResponse()
    response.say(line, voice=TWILIO_VOICE, language=TWILIO_LANGUAGE)
    response.redirect(RESPOND_PATH, method="POST")
    return response


@voice_bp.route("/audio/<filename>")
def serve_audio(filename):
    """Serve a generated WAV file. Twilio fetches this URL for <Play>."""
    return send_from_directory(AUDIO_DIR, filename, mimetype="audio/wav")


@voice_bp.route("/voice", methods=["POST"])
def voice_incoming():
    """Twilio hits this when someone calls. Greets, then listens."""
    engine = current_app.extensions["runtime"].engine
    call_sid = request.form.get("CallSid", "unknown")
    caller = request.form.get("From", "")
    logger.info("[Twilio] Incoming call %s from %s", call_sid, caller or "unknown")
    try:
        result = engine.start(call_sid, caller)
        return twiml(render_actions(result.actions, label="greeting"))
    except Exception:
        logger.exception("[Twilio] voice_incoming failed for %s", call_sid)
        return twiml(_safe_response())


@voice_bp.route(RESPOND_PATH, methods=["POST"])
def voice_respond():
    """
    Twilio hits this after <Gather> (or the fallback <Redirect>). Empty or
    low-confidence speech is passed on as silence.
    """
    engine = current_app.extensions["runtime"].engine
    call_sid = request.form.get("CallSid", "unknown")
    speech = request.form.get("SpeechResult", "")
    try:
        confidence = float(request.form.get("Confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0

    if speech and confidence < MIN_SPEECH_CONFIDENCE:
        logger.info("[Twilio] %s: ignoring low-confidence speech (%.2f): %r", call_sid, confidence, speech)
        speech = ""
    logger.info("[Twilio] CallSid=%s Speech=%r Confidence=%.2f", call_sid, speech, confidence)

    try:
        t0 = time.time()
        result = engine.respond(call_sid, speech)
        logger.info(
            "[Triage] %s state=%s hang_up=%s (%.1fs): %s",
            call_sid, result.state.value, result.hang_up, time.time() - t0, result.spoken_line,
        )
        return twiml(render_actions(result.actions))
    except Exception:
        # If anything explodes, don't kill the call; ask the caller to repeat.
        logger.exception("[Twilio] voice_respond failed for %s", call_sid)
        return twiml(_safe_response())


@voice_bp.route(STATUS_PATH, methods=["POST"])
def voice_status():
    """
    Twilio status callback (point the number's statusCallback here). A caller
    who hangs up mid-dialogue is released here, and the case stops showing as
    in progress.
    """
    engine = current_app.extensions["runtime"].engine
    call_sid = request.form.get("CallSid", "")
    status = request.form.get("CallStatus", "")
    logger.info("[Twilio] Status %s for %s", status or "unknown", call_sid or "unknown")
    if call_sid and status in ENDED_STATUSES:
        engine.abandon(call_sid, f"call {status}")
    return "", 204
