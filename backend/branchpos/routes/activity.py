# backend/branchpos/routes/activity.py
"""Operator activity feed (most recent first)."""

from flask import Blueprint, request, jsonify

from ..decorators import require_tenant_context
from ..errors import SERVICE_ERRORS, json_error
from ..services import activity_service
from ..services.tenant_service import get_current_context


activity_bp = Blueprint("activity", __name__, url_prefix="/api/activities")


@activity_bp.get("")
@require_tenant_context
def list_activities_route():
    try:
        limit = min(int(request.args.get("limit", 50)), activity_service.MAX_ACTIVITIES)
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    try:
        activities = activity_service.list_activities(get_current_context(), limit)
        return jsonify({"activities": activities, "count": len(activities)}), 200
    except SERVICE_ERRORS as e:
        return json_error(e)
