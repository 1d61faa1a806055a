"""
Geocoding via OpenStreetMap Nominatim (free, no key).

forward(): spoken address -> coordinates + display address.
reverse(): device GPS fix -> display address.
Failure is never fatal: every error is logged and comes back as None, and the
caller keeps using the spoken text.
"""

import logging
import threading
from collections import OrderedDict
from typing import Optional

import requests

from config import (
    GEOCODE_CACHE_SIZE,
    GEOCODE_ENABLED,
    GEOCODE_REGION,
    GEOCODE_TIMEOUT_SECONDS,
    GEOCODE_URL,
    GEOCODE_USER_AGENT,
)

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


def parse_components(address: Optional[dict]) -> dict:
    """Nominatim addressdetails -> {city, district, state}, "Unknown" when absent."""
    address = address or {}
    city = address.get("city") or address.get("town") or address.get("village") or address.get("suburb")
    district = address.get("state_district") or address.get("county") or address.get("city_district")
    return {
        "city": city or UNKNOWN,
        "district": district or UNKNOWN,
        "state": address.get("state") or UNKNOWN,
    }


# Fallback areas for common place names when Nominatim has nothing.
# Matched as a substring of the lowercased address, first hit wins.
KNOWN_PLACES = {
    "pune": ("Pune", "Pune", "Maharashtra"),
    "vishwakarma": ("Pune City", "Pune", "Maharashtra"),
    "mumbai": ("Mumbai", "Mumbai City", "Maharashtra"),
    "delhi": ("New Delhi", "Central Delhi", "Delhi"),
    "bangalore": ("Bengaluru", "Bengaluru Urban", "Karnataka"),
    "bengaluru": ("Bengaluru", "Bengaluru Urban", "Karnataka"),
    "chennai": ("Chennai", "Chennai", "Tamil Nadu"),
    "hyderabad": ("Hyderabad", "Hyderabad", "Telangana"),
    "kolkata": ("Kolkata", "Kolkata", "West Bengal"),
    "ahmedabad": ("Ahmedabad", "Ahmedabad", "Gujarat"),
    "lucknow": ("Lucknow", "Lucknow", "Uttar Pradesh"),
    "jaipur": ("Jaipur", "Jaipur", "Rajasthan"),
    "chandigarh": ("Chandigarh", "Chandigarh", "Chandigarh"),
    "amritsar": ("Amritsar", "Amritsar", "Punjab"),
    "ludhiana": ("Ludhiana", "Ludhiana", "Punjab"),
    "nagpur": ("Nagpur City", "Nagpur Urban Taluka", "Maharashtra"),
    "aurangabad": ("Aurangabad", "Aurangabad", "Maharashtra"),
}


def known_area(address: Optional[str]) -> Optional[dict]:
    """{city, district, state} for an address naming a known place, else None."""
    text = (address or "").lower()
    for key, (city, district, state) in KNOWN_PLACES.items():
        if key in text:
            return {"city": city, "district": district, "state": state}
    return None


def _place(hit: dict) -> dict:
    place = {
        "lat": float(hit["lat"]),
        "lon": float(hit["lon"]),
        "display_name": hit.get("display_name", ""),
    }
    place.update(parse_components(hit.get("address")))
    return place


class Geocoder:
    """Thin Nominatim client with a bounded in-memory cache for forward lookups."""

    def __init__(
        self,
        base_url: str = GEOCODE_URL,
        region: str = GEOCODE_REGION,
        timeout_seconds: float = GEOCODE_TIMEOUT_SECONDS,
        user_agent: str = GEOCODE_USER_AGENT,
        enabled: bool = GEOCODE_ENABLED,
        session=None,
        cache_size: int = GEOCODE_CACHE_SIZE,
    ):
        self.base_url = base_url.rstrip("/")
        self.region = region
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self._http = session or requests.Session()
        self._headers = {"User-Agent": user_agent}
        # Least recently used forward lookups, misses included.
        self._cache: OrderedDict[str, Optional[dict]] = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()

    def _get(self, path: str, params: dict):
        resp = self._http.get(
            f"{self.base_url}/{path}",
            params=params,
            headers=self._headers,
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        return resp.json()

    def forward(self, address: Optional[str]) -> Optional[dict]:
        """
        Look up a spoken address. Returns {lat, lon, display_name, city,
        district, state} or None. Misses are cached too so a bad address
        isn't retried on every turn.
        """
        if not self.enabled or not address or not address.strip():
            return None

        cache_key = address.strip().lower()
        with self._cache_lock:
            if cache_key in self._cache:
                self._cache.move_to_end(cache_key)
                return self._cache[cache_key]

        query = f"{address}, {self.region}" if self.region else address
        try:
            results = self._get("search", {"q": query, "format": "json", "limit": 1, "addressdetails": 1})
            place = _place(results[0]) if results else None
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning("[Geocode] Failed for %r: %s", address, e)
            return None

        if place:
            logger.info("[Geocode] %r -> %.4f, %.4f", address, place["lat"], place["lon"])
        else:
            logger.info("[Geocode] No match for %r", address)
        with self._cache_lock:
            self._cache[cache_key] = place
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return place

    def reverse(self, lat: float, lon: float) -> Optional[dict]:
        """Look up a GPS fix. Same shape as forward(), or None."""
        if not self.enabled:
            return None
        try:
            hit = self._get("reverse", {"lat": lat, "lon": lon, "format": "json", "addressdetails": 1})
            if not hit or "error" in hit:
                logger.info("[Geocode] No address at %s, %s", lat, lon)
                return None
            return _place(hit)
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning("[Geocode] Reverse lookup failed for %s, %s: %s", lat, lon, e)
            return None
