# Overview: Request decorators that establish the explicit tenant context for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .services import tenant_service
from .services.document_store_service import PersistenceError
from .services.tenant_service import TenantAccessError
from .validation import ValidationError

TENANT_HEADER = "X-Tenant-Id"
OPERATOR_HEADER = "X-Operator-Id"


def require_tenant_context(f):
    """
    Resolve the acting operator and establish tenant context.

    Sets:
    - g.tenant_context: TenantContext (tenant, operator, role, branch)

    SECURITY: Returns 401 without both headers, 404 when the tenant or the
    operator cannot be resolved (same message for both), 400 when the stored
    document is malformed, 503 when the store is unreachable.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        tenant_id = (request.headers.get(TENANT_HEADER) or "").strip()
        operator_id = (request.headers.get(OPERATOR_HEADER) or "").strip()

        if not tenant_id or not operator_id:
            return jsonify({"error": "Tenant context required"}), 401

        try:
            g.tenant_context = tenant_service.resolve_context(tenant_id, operator_id)
        except TenantAccessError:
            return jsonify({"error": "Tenant or operator not found"}), 404
        except ValidationError as e:
            current_app.logger.warning("Malformed tenant document tenant=%s: %s", tenant_id, e)
            return jsonify({"error": str(e), "details": e.details}), 400
        except PersistenceError as e:
            return jsonify({"error": str(e), "details": e.details, "retryable": True}), 503

        return f(*args, **kwargs)

    return decorated_function


def require_admin_role(f):
    """Must be used after @require_tenant_context."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        ctx = getattr(g, "tenant_context", None)
        if ctx is None:
            return jsonify({"error": "Tenant context required"}), 401
        if not ctx.is_admin:
            return jsonify({"error": "Admin role required"}), 403
        return f(*args, **kwargs)

    return decorated_function
