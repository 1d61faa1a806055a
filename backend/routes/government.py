"""
Area-level views for the government dashboard: where open cases are and how
urgent they are, by state / district / city.
"""
import logging
from collections import Counter

from flask import Blueprint, current_app, jsonify, request

from services.geocode import UNKNOWN

logger = logging.getLogger(__name__)

government_bp = Blueprint("government", __name__, url_prefix="/api/government")

AREA_FIELDS = ("state", "district", "city")
TOP_LOCATIONS = 10
MAP_FIELDS = ("id", "emergency", "name", "location", "city", "district", "state", "priority", "coordinates", "createdAt")


def _runtime():
    return current_app.extensions["runtime"]


def in_area(case, args) -> bool:
    """Exact match on each of ?state=&district=&city= that is given and not ALL."""
    for name in AREA_FIELDS:
        wanted = args.get(name)
        if wanted and wanted != "ALL" and getattr(case, name) != wanted:
            return False
    return True


def location_hierarchy(cases) -> dict:
    """state -> district -> sorted cities, leaving out Unknown at every level."""
    tree = {}
    for case in cases:
        if case.state == UNKNOWN:
            continue
        districts = tree.setdefault(case.state, {})
        if case.district == UNKNOWN:
            continue
        cities = districts.setdefault(case.district, set())
        if case.city != UNKNOWN:
            cities.add(case.city)
    return {
        state: {district: sorted(cities) for district, cities in sorted(districts.items())}
        for state, districts in sorted(tree.items())
    }


def area_stats(cases) -> dict:
    by_priority = Counter(case.priority for case in cases)
    by_location = Counter((case.city, case.district, case.state) for case in cases)
    average = sum(case.priority for case in cases) / len(cases) if cases else 0
    return {
        "totalCases": len(cases),
        "byPriority": [{"priority": p, "count": n} for p, n in sorted(by_priority.items())],
        "byLocation": [
            {"city": city, "district": district, "state": state, "count": n}
            for (city, district, state), n in by_location.most_common(TOP_LOCATIONS)
        ],
        "averagePriority": round(average, 2),
        "mapCalls": [{k: data[k] for k in MAP_FIELDS} for data in (case.to_json() for case in cases)],
    }


@government_bp.route("/locations", methods=["GET"])
def get_locations():
    """Every state / district / city that has ever had a case."""
    return jsonify({"success": True, "data": location_hierarchy(_runtime().cases.list_all())})


@government_bp.route("/stats", methods=["GET"])
def get_stats():
    """
    Counts over open cases, optionally narrowed with ?state=&district=&city=
    (ALL or missing means no filter).
    """
    cases = [case for case in _runtime().cases.list_open() if in_area(case, request.args)]
    logger.info("[Government] Stats over %d open case(s)", len(cases))
    return jsonify({"success": True, "data": area_stats(cases)})
