"""
Twilio webhook tests: /voice and /voice/respond always answer with TwiML, and
the engine's actions come out as <Gather>/<Say>/<Redirect>/<Hangup>.
TTS is switched off so every line is a <Say>.
"""

import pytest

import routes.voice
from app import create_app
from conftest import FakeGeocoder, FakeZeroShot, ScriptedExtractor, extraction_failure
from runtime import build_runtime
from services.triage import ASK_LOCATION, CLOSING, GREETING, SILENCE_PROMPTS, Action, DialogueAction
from services.states import DialogueState


@pytest.fixture(autouse=True)
def no_tts(monkeypatch):
    monkeypatch.setattr(routes.voice, "tts_available", lambda: False)


@pytest.fixture
def extractor():
    return ScriptedExtractor()


@pytest.fixture
def runtime(collection, extractor):
    return build_runtime(collection=collection, extractor=extractor, zero_shot=FakeZeroShot(), geocoder=FakeGeocoder())


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    with app.test_client() as c:
        yield c


def post(client, path, **form):
    r = client.post(path, data=form)
    assert r.status_code == 200
    assert r.headers["Content-Type"].startswith("text/xml")
    return r.get_data(as_text=True)


def test_incoming_call_greets_inside_gather(client, runtime):
    xml = post(client, "/voice", CallSid="CA100", From="+919876543210")
    assert "<Gather" in xml
    assert 'action="/voice/respond"' in xml
    assert GREETING in xml
    assert xml.index("</Gather>") < xml.index("<Redirect")
    assert runtime.sessions.get("CA100").caller_id == "+919876543210"
    assert runtime.cases.get("CA100").priority == 0


def test_speech_runs_a_turn(client, extractor, runtime):
    extractor.answers = ["fire"]
    post(client, "/voice", CallSid="CA101")
    xml = post(client, "/voice/respond", CallSid="CA101", SpeechResult="there's a fire", Confidence="0.92")
    assert ASK_LOCATION in xml
    assert "<Gather" in xml
    assert runtime.cases.get("CA101").priority == 1


def test_no_speech_reprompts(client, extractor):
    post(client, "/voice", CallSid="CA102")
    xml = post(client, "/voice/respond", CallSid="CA102")
    assert SILENCE_PROMPTS[DialogueState.AWAIT_EMERGENCY] in xml
    assert "<Hangup" not in xml
    assert extractor.calls == 0


def test_low_confidence_speech_counts_as_silence(client, extractor):
    post(client, "/voice", CallSid="CA103")
    xml = post(client, "/voice/respond", CallSid="CA103", SpeechResult="mumble", Confidence="0.1")
    assert SILENCE_PROMPTS[DialogueState.AWAIT_EMERGENCY] in xml
    assert extractor.calls == 0


def test_model_failure_still_returns_twiml(client, extractor):
    extractor.answers = [extraction_failure()]
    xml = post(client, "/voice/respond", CallSid="CA104", SpeechResult="help", Confidence="0.9")
    assert "<Gather" in xml
    assert "<Hangup" not in xml


def test_unexpected_error_returns_safe_twiml(client, runtime, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(runtime.engine, "respond", boom)
    xml = post(client, "/voice/respond", CallSid="CA105", SpeechResult="help", Confidence="0.9")
    assert "could you repeat that" in xml
    assert "/voice/respond" in xml


def test_ended_call_just_hangs_up(client, runtime):
    runtime.sessions.discard("CA106")
    xml = post(client, "/voice/respond", CallSid="CA106", SpeechResult="hello", Confidence="0.9")
    assert "<Hangup" in xml
    assert "<Gather" not in xml


def test_render_hang_up_actions(client):
    with client.application.test_request_context("/voice/respond"):
        xml = str(routes.voice.render_actions([DialogueAction(Action.SPEAK, CLOSING), DialogueAction(Action.HANGUP)]))
    assert CLOSING in xml
    assert xml.index("<Say") < xml.index("<Hangup")
    assert "<Gather" not in xml


def test_render_uses_generated_audio_when_available(client, monkeypatch):
    monkeypatch.setattr(routes.voice, "tts_available", lambda: True)
    monkeypatch.setattr(routes.voice, "generate_audio", lambda text, label="": "cached_00.wav")
    with client.application.test_request_context("/voice", base_url="https://dispatch.example"):
        xml = str(routes.voice.render_actions([DialogueAction(Action.SPEAK, GREETING), DialogueAction(Action.LISTEN)]))
    assert "<Play>https://dispatch.example/audio/cached_00.wav</Play>" in xml


def test_tts_failure_falls_back_to_say(client, monkeypatch):
    def broken(text, label=""):
        raise RuntimeError("gradium down")

    monkeypatch.setattr(routes.voice, "tts_available", lambda: True)
    monkeypatch.setattr(routes.voice, "generate_audio", broken)
    with client.application.test_request_context("/voice"):
        xml = str(routes.voice.render_actions([DialogueAction(Action.SPEAK, GREETING), DialogueAction(Action.LISTEN)]))
    assert GREETING in xml
    assert "<Say" in xml


def test_status_callback_releases_a_call_the_caller_left(client, extractor, runtime):
    extractor.answers = ["fire"]
    post(client, "/voice", CallSid="CA200")
    post(client, "/voice/respond", CallSid="CA200", SpeechResult="fire", Confidence="0.9")

    r = client.post("/voice/status", data={"CallSid": "CA200", "CallStatus": "completed"})
    assert r.status_code == 204
    assert "CA200" not in runtime.sessions
    assert runtime.cases.get("CA200").in_progress is False
    assert runtime.cases.get("CA200").priority == 1


def test_status_callback_ignores_calls_still_ringing_or_live(client, runtime):
    post(client, "/voice", CallSid="CA201")
    for status in ("ringing", "in-progress"):
        r = client.post("/voice/status", data={"CallSid": "CA201", "CallStatus": status})
        assert r.status_code == 204
    assert "CA201" in runtime.sessions


def test_status_callback_for_unknown_call(client, runtime):
    r = client.post("/voice/status", data={"CallSid": "CA202", "CallStatus": "no-answer"})
    assert r.status_code == 204
    assert runtime.cases.get("CA202") is None
