"""
Dispatch backend: Flask app with Twilio voice integration and Gradium TTS.

  /voice, /voice/respond, /audio/<file>   Twilio webhooks (routes/voice.py)
  /api/calls...                           dispatch queue and cases (routes/calls.py)
  /location                               device GPS fix for a live call
  /api/chat                               text test route, one utterance per request
  /api/events                             SSE stream for the dashboard
  /api/active-calls                       live sessions
  /api/health

Text-based /api/chat endpoint is kept for testing without a phone.
"""

import json
import logging
import os
import queue

from flask import Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from twilio.twiml.voice_response import VoiceResponse
from werkzeug.exceptions import HTTPException

from config import configure_logging
from errors import DispatchError, PersistenceError, SessionClosedError
from events import CLOSED
from routes.calls import calls_bp
from routes.government import government_bp
from routes.voice import voice_bp
from runtime import build_runtime

logger = logging.getLogger(__name__)

# DispatchError subclasses that reach an API route -> HTTP status
ERROR_STATUS = {
    SessionClosedError: 409,
    PersistenceError: 503,
}


def _runtime():
    return current_app.extensions["runtime"]


def create_app(runtime=None) -> Flask:
    """Build the Flask app around a Runtime (the configured one by default)."""
    app = Flask(__name__)
    CORS(app)
    app.extensions["runtime"] = runtime or build_runtime()

    app.register_blueprint(calls_bp)
    app.register_blueprint(government_bp)
    app.register_blueprint(voice_bp)

    # ═════════════════════════════════════════════════════════════════
    # Global error handler: Twilio must ALWAYS get valid TwiML, never a 500
    # ═════════════════════════════════════════════════════════════════

    @app.errorhandler(Exception)
    def handle_any_error(e):
        if isinstance(e, HTTPException):
            return e

        path = request.path or ""
        if path.startswith("/voice"):
            logger.exception("[GLOBAL ERROR] %s: %s", type(e).__name__, e)
            response = VoiceResponse()
            response.say("We are experiencing a temporary issue. Please hold.")
            response.redirect("/voice/respond", method="POST")
            return str(response), 200, {"Content-Type": "text/xml"}

        if isinstance(e, DispatchError):
            status = next((s for cls, s in ERROR_STATUS.items() if isinstance(e, cls)), 400)
            logger.warning("[API] %s: %s", e.code, e.message)
            return jsonify({"error": e.message, "code": e.code, "details": e.details}), status

        logger.exception("[GLOBAL ERROR] %s: %s", type(e).__name__, e)
        return jsonify({"error": "Internal server error", "detail": str(e)}), 500

    # ═════════════════════════════════════════════════════════════════
    # Dashboard and test routes
    # ═════════════════════════════════════════════════════════════════

    @app.route("/api/events")
    def events():
        """Server-Sent Events for the one connected dashboard. A new connection replaces the old."""
        broadcaster = _runtime().broadcaster
        q = broadcaster.subscribe()

        def gen():
            try:
                while True:
                    try:
                        event = q.get(timeout=30)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    if event is CLOSED:
                        return
                    yield f"data: {json.dumps(event)}\n\n"
            finally:
                broadcaster.unsubscribe(q)

        return Response(
            gen(),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.route("/api/chat", methods=["POST"])
    def chat():
        """
        Text-based test route. Simulates one caller utterance per request.
        Send JSON: {"call_id": "any-string", "message": "what the caller says", "stress": 0.8}
        An empty message counts as silence.
        """
        data = request.get_json(silent=True) or {}
        call_id = data.get("call_id")
        message = data.get("message")
        if not call_id or message is None:
            return jsonify({"error": "call_id and message are required"}), 400

        stress = data.get("stress")
        if stress is not None:
            try:
                stress = float(stress)
            except (TypeError, ValueError):
                return jsonify({"error": "stress must be a number between 0 and 1"}), 400
            if not 0.0 <= stress <= 1.0:
                return jsonify({"error": "stress must be a number between 0 and 1"}), 400

        result = _runtime().engine.respond(call_id, message, stress=stress)
        return jsonify(result.to_json())

    @app.route("/location", methods=["POST"])
    def receive_location():
        """
        GPS fix from the caller's device.
        Send JSON: {"callId": "...", "latitude": 18.52, "longitude": 73.85, "accuracy": 12}
        """
        data = request.get_json(silent=True) or {}
        call_id = data.get("callId")
        try:
            lat = float(data["latitude"])
            lon = float(data["longitude"])
        except (KeyError, TypeError, ValueError):
            return jsonify({"error": "callId, latitude and longitude are required"}), 400
        if not call_id:
            return jsonify({"error": "callId, latitude and longitude are required"}), 400

        # accuracy is optional; anything non-numeric is dropped.
        try:
            accuracy = float(data["accuracy"]) if data.get("accuracy") is not None else None
        except (TypeError, ValueError):
            accuracy = None

        case = _runtime().engine.attach_coordinates(call_id, lat, lon, accuracy)
        return jsonify({"success": True, "call": case.to_json()})

    @app.route("/api/active-calls", methods=["GET"])
    def get_active_calls():
        """
        Live sessions the engine is handling right now.
        /api/calls returns the persisted dispatch queue instead.
        """
        calls = []
        for session in _runtime().sessions.active():
            classification = session.classification
            calls.append({
                "call_id": session.call_id,
                "state": session.state.value,
                "followup_count": session.followup_count,
                "priority": classification.priority if classification else 0,
                "createdAt": session.created_at.isoformat(),
                **session.slots(),
            })
        return jsonify(calls)

    @app.route("/api/health")
    def health():
        runtime = _runtime()
        return jsonify({
            "status": "ok",
            "activeCalls": len(runtime.sessions),
            "semanticClassifier": runtime.classifier.semantic_available,
        })

    return app


if __name__ == "__main__":
    from services.voice import precache_fixed_lines

    configure_logging()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0").lower() in ("1", "true", "yes")

    logger.info("Dispatch backend starting on http://0.0.0.0:%d", port)
    if debug:
        logger.info("(If using Twilio locally, use ngrok and point webhooks to /voice)")

    # Pre-cache once (avoid double-run when debug reloader is on)
    should_precache = (not debug) or (os.environ.get("WERKZEUG_RUN_MAIN") == "true")
    if should_precache:
        precache_fixed_lines()

    create_app().run(
        host="0.0.0.0",
        port=port,
        debug=debug,
        use_reloader=debug,
        threaded=True,
    )
