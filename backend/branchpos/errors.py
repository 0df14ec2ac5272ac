# Overview: Translation of service-layer exceptions into JSON error responses.

from flask import jsonify, current_app

from .validation import ValidationError, ConflictError
from .services.checkout_service import CheckoutStateError
from .services.credit_service import CreditLimitExceeded
from .services.document_store_service import PersistenceError
from .services.sync_service import SyncTransportError
from .services.tenant_service import AuthorizationGuardError, TenantAccessError

SERVICE_ERRORS = (
    ValidationError,
    ConflictError,
    CheckoutStateError,
    CreditLimitExceeded,
    PersistenceError,
    SyncTransportError,
    AuthorizationGuardError,
    TenantAccessError,
)


def json_error(exc: Exception):
    """(response, status) for a service exception; unknown exceptions map to 500."""
    details = getattr(exc, "details", None) or {}
    if isinstance(exc, (ValidationError, CreditLimitExceeded)):
        return jsonify({"error": str(exc), "details": details}), 400
    if isinstance(exc, AuthorizationGuardError):
        return jsonify({"error": str(exc), "details": details}), 403
    if isinstance(exc, TenantAccessError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, (CheckoutStateError, ConflictError)):
        return jsonify({"error": str(exc), "details": details}), 409
    if isinstance(exc, (PersistenceError, SyncTransportError)):
        return jsonify({"error": str(exc), "details": details, "retryable": True}), 503
    current_app.logger.error("Unmapped error %s: %s", type(exc).__name__, exc)
    return jsonify({"error": "Internal server error"}), 500
