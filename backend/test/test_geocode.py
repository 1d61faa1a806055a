import requests

from services.geocode import Geocoder, known_area, parse_components


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(str(self.status))

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params, headers, timeout):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


PUNE_HIT = {
    "lat": "18.5204",
    "lon": "73.8567",
    "display_name": "MG Road, Camp, Pune, Maharashtra, India",
    "address": {"road": "MG Road", "city": "Pune", "state_district": "Pune District", "state": "Maharashtra"},
}


def geocoder(*responses, region=""):
    session = FakeSession(*responses)
    return Geocoder(base_url="https://nominatim.test/", region=region, timeout_seconds=2,
                    user_agent="tests", enabled=True, session=session), session


def test_forward_returns_place_with_components():
    geo, session = geocoder(FakeResponse([PUNE_HIT]), region="India")
    place = geo.forward("MG Road")
    assert place == {
        "lat": 18.5204,
        "lon": 73.8567,
        "display_name": "MG Road, Camp, Pune, Maharashtra, India",
        "city": "Pune",
        "district": "Pune District",
        "state": "Maharashtra",
    }
    call = session.requests[0]
    assert call["url"] == "https://nominatim.test/search"
    assert call["params"]["q"] == "MG Road, India"
    assert call["headers"]["User-Agent"] == "tests"
    assert call["timeout"] == 2


def test_forward_is_cached_including_misses():
    geo, session = geocoder(FakeResponse([]))
    assert geo.forward("nowhere land") is None
    assert geo.forward("  Nowhere Land ") is None
    assert len(session.requests) == 1


def test_forward_failure_returns_none():
    geo, _ = geocoder(requests.Timeout("slow"), FakeResponse([PUNE_HIT]))
    assert geo.forward("MG Road") is None
    # failures are not cached; the next turn may try again
    assert geo.forward("MG Road")["city"] == "Pune"


def test_disabled_or_blank_never_calls_out():
    geo, session = geocoder()
    geo.enabled = False
    assert geo.forward("MG Road") is None
    assert geo.reverse(1.0, 2.0) is None
    geo.enabled = True
    assert geo.forward("   ") is None
    assert session.requests == []


def test_reverse_lookup():
    geo, session = geocoder(FakeResponse(PUNE_HIT), FakeResponse({"error": "Unable to geocode"}))
    assert geo.reverse(18.52, 73.85)["display_name"].startswith("MG Road")
    assert session.requests[0]["url"] == "https://nominatim.test/reverse"
    assert geo.reverse(0.0, 0.0) is None


def test_reverse_bad_payload_returns_none():
    geo, _ = geocoder(FakeResponse({"display_name": "no coordinates"}))
    assert geo.reverse(1.0, 2.0) is None


def test_parse_components_defaults():
    assert parse_components(None) == {"city": "Unknown", "district": "Unknown", "state": "Unknown"}
    assert parse_components({"town": "Lonavala", "county": "Maval"})["city"] == "Lonavala"
    assert parse_components({"town": "Lonavala", "county": "Maval"})["district"] == "Maval"


def test_cache_keeps_only_the_most_recent_lookups():
    session = FakeSession(*(FakeResponse([]) for _ in range(4)))
    geo = Geocoder(base_url="https://nominatim.test", region="", timeout_seconds=2,
                   user_agent="tests", enabled=True, session=session, cache_size=2)
    geo.forward("A Street")
    geo.forward("B Street")
    geo.forward("A Street")
    geo.forward("C Street")  # pushes out B, the least recently used
    assert len(session.requests) == 3

    geo.forward("A Street")
    assert len(session.requests) == 3
    geo.forward("B Street")
    assert len(session.requests) == 4


def test_known_area_matches_place_names():
    assert known_area("near Shivajinagar, PUNE") == {"city": "Pune", "district": "Pune", "state": "Maharashtra"}
    assert known_area("Koramangala, Bengaluru")["state"] == "Karnataka"
    assert known_area("behind the old temple") is None
    assert known_area(None) is None
