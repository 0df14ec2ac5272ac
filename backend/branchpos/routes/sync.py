# backend/branchpos/routes/sync.py
"""
Polling endpoint for remote sync clients.

Returns the same scoped collection a subscription emits, plus the document
revision. Clients poll with ?since=<revision> and get 304 when nothing moved.
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_tenant_context
from ..errors import SERVICE_ERRORS, json_error
from ..schemas import BRANCH_PARTITIONED_COLLECTIONS
from ..services.document_store_service import read_tenant_document
from ..services.sync_service import scope_collection, clamp_poll_interval
from ..services.tenant_service import get_current_context, view_branch


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.get("/<collection>")
@require_tenant_context
def collection_route(collection: str):
    try:
        ctx = get_current_context()
        branch_id = None
        if collection in BRANCH_PARTITIONED_COLLECTIONS:
            branch_id = view_branch(ctx, request.args.get("branch_id"))

        document, revision = read_tenant_document(ctx.tenant_id)
        since = request.args.get("since")
        if since is not None and since.isdigit() and int(since) == revision:
            return "", 304

        records = scope_collection(document, collection, branch_id)
        return jsonify({
            "collection": collection,
            "branch_id": branch_id,
            "revision": revision,
            "records": records,
            "count": len(records),
            "poll_interval_seconds": clamp_poll_interval(current_app.config.get("SYNC_POLL_INTERVAL_SECONDS")),
        }), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Sync read failed")
        return jsonify({"error": "Internal server error"}), 500
