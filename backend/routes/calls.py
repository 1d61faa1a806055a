"""
Call-related API routes: the dispatch queue and case lifecycle for the dashboard.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from services.dispatch_queue import time_in_queue
from services.priority import priority_label

logger = logging.getLogger(__name__)

calls_bp = Blueprint("calls", __name__, url_prefix="/api/calls")

# Query-string filters for GET /api/calls -> Case attribute
FILTERS = ("state", "district", "city")


def _runtime():
    return current_app.extensions["runtime"]


def case_view(case, position=None) -> dict:
    """Case JSON plus the dashboard-only fields (labels, age, queue slot)."""
    data = case.to_json()
    data["priorityLabel"] = priority_label(case.priority)
    data["timeInQueue"] = time_in_queue(case.created_at)
    if position is not None:
        data["queuePosition"] = position
    return data


def _matches(case, args) -> bool:
    for name in FILTERS:
        wanted = args.get(name)
        if wanted and getattr(case, name).lower() != wanted.lower():
            return False
    priority = args.get("priority")
    if priority and str(case.priority) != priority:
        return False
    return True


@calls_bp.route("", methods=["GET"])
def get_queue():
    """
    Open cases in dispatch order.

    Optional filters (exact, case-insensitive): ?state=&district=&city=&priority=
    queuePosition is the place in the full queue, before filtering.
    """
    queue = _runtime().queue.snapshot()
    return jsonify([
        case_view(case, position)
        for position, case in enumerate(queue, start=1)
        if _matches(case, request.args)
    ])


@calls_bp.route("/next", methods=["GET"])
def get_next():
    """The case to dispatch next, or 404 when the queue is empty."""
    case = _runtime().queue.next_to_dispatch()
    if case is None:
        return jsonify({"error": "Queue is empty"}), 404
    return jsonify(case_view(case, 1))


@calls_bp.route("/resolved", methods=["GET"])
def get_resolved():
    """Resolved cases, most recently resolved first."""
    return jsonify([case_view(case) for case in _runtime().cases.list_resolved()])


@calls_bp.route("/<call_id>", methods=["GET"])
def get_call(call_id: str):
    """Fetch a single case by id."""
    runtime = _runtime()
    case = runtime.cases.get(call_id)
    if case is None:
        return jsonify({"error": "Call not found"}), 404
    return jsonify(case_view(case, runtime.queue.position(call_id)))


@calls_bp.route("/<call_id>/resolve", methods=["POST"])
def resolve_call(call_id: str):
    """Mark an open case resolved; it leaves the queue on the next read."""
    runtime = _runtime()
    if not runtime.cases.resolve(call_id):
        return jsonify({"error": "No open call with that id"}), 404
    case = runtime.cases.get(call_id)
    runtime.broadcaster.notify({"type": "call_resolved", "call": case.to_json()})
    logger.info("[Queue] %d case(s) left after resolving %s", len(runtime.queue.snapshot()), call_id)
    return jsonify(case_view(case))
