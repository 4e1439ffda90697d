"""
Tokens API Blueprint

Flask routes over the token engine:
- POST /api/v1/tokens/allocate - Allocate a token
- POST /api/v1/tokens/emergency - Emergency insertion
- POST /api/v1/tokens/<token_id>/cancel - Cancel a token
- POST /api/v1/tokens/<token_id>/move - Move a token to another slot
- POST /api/v1/tokens/<token_id>/confirm - Confirm arrival
- POST /api/v1/tokens/<token_id>/start - Start consultation
- POST /api/v1/tokens/<token_id>/complete - Complete consultation
- POST /api/v1/tokens/<token_id>/no-show - Mark no-show
- POST /api/v1/tokens/reallocate - Batch reallocation
- GET /api/v1/tokens/statistics - Allocation statistics
- GET /api/v1/tokens/<token_id> - Token record
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from opd_tokens.errors import AppError, ErrorCode
from opd_tokens.services.outcomes import Allocated, Alternatives, Rejected, parse_date

bp = Blueprint("tokens_api", __name__, url_prefix="/api/v1/tokens")

logger = logging.getLogger("api.tokens")


def _engine():
    return current_app.extensions["token_engine"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise AppError(ErrorCode.VALIDATION_ERROR, "Request body must be a JSON object")
    return data


def _outcome_response(outcome):
    if isinstance(outcome, Allocated):
        return jsonify({"ok": True, **outcome.to_dict()}), 201
    if isinstance(outcome, Alternatives):
        return jsonify({"ok": True, **outcome.to_dict()}), 200
    if isinstance(outcome, Rejected):
        return jsonify({"ok": False, **outcome.to_dict()}), outcome.http_status
    raise TypeError(f"Unexpected allocation outcome {type(outcome).__name__}")


def _token_response(token, status: int = 200):
    return jsonify({"ok": True, "token": token.to_dict()}), status


@bp.app_errorhandler(AppError)
def handle_app_error(error: AppError):
    if error.http_status >= 500:
        logger.error("%s: %s", error.code, error.message)
    return jsonify({"ok": False, "error": error.to_dict()}), error.http_status


# =============================================================================
# Allocation
# =============================================================================

@bp.route("/allocate", methods=["POST"])
def allocate():
    """Allocate a token; the body is an allocation request."""
    return _outcome_response(_engine().allocate(_json_body()))


@bp.route("/emergency", methods=["POST"])
def emergency():
    data = _json_body()
    if not data.get("patient_id"):
        raise AppError(ErrorCode.VALIDATION_ERROR, "patient_id is required")
    outcome = _engine().emergency_insertion(
        patient_id=data["patient_id"],
        doctor_id=data.get("doctor_id"),
        preferred_slot_id=data.get("preferred_slot_id"),
        patient_info=data.get("patient_info"),
        urgency_level=data.get("urgency_level", "emergency"),
        allow_preemption=bool(data.get("allow_preemption", True)),
        department=data.get("department"),
    )
    return _outcome_response(outcome)


# =============================================================================
# Token lifecycle
# =============================================================================

@bp.route("/<token_id>/cancel", methods=["POST"])
def cancel(token_id):
    data = _json_body()
    token = _engine().cancel(
        token_id,
        reason=data.get("reason", "patient_request"),
        cancelled_by=data.get("cancelled_by"),
        notes=data.get("notes"),
    )
    return _token_response(token)


@bp.route("/<token_id>/move", methods=["POST"])
def move(token_id):
    data = _json_body()
    if not data.get("new_slot_id"):
        raise AppError(ErrorCode.VALIDATION_ERROR, "new_slot_id is required")
    token = _engine().move(token_id, data["new_slot_id"], actor_id=data.get("actor_id"))
    return _token_response(token, 201)


@bp.route("/<token_id>/confirm", methods=["POST"])
def confirm(token_id):
    data = _json_body()
    return _token_response(_engine().confirm(token_id, data.get("actor_id"), data.get("notes")))


@bp.route("/<token_id>/start", methods=["POST"])
def start(token_id):
    data = _json_body()
    return _token_response(_engine().start_consultation(token_id, data.get("actor_id"), data.get("notes")))


@bp.route("/<token_id>/complete", methods=["POST"])
def complete(token_id):
    data = _json_body()
    return _token_response(_engine().complete(token_id, data.get("actor_id"), data.get("notes")))


@bp.route("/<token_id>/no-show", methods=["POST"])
def no_show(token_id):
    data = _json_body()
    return _token_response(_engine().mark_no_show(token_id, data.get("actor_id"), data.get("notes")))


@bp.route("/<token_id>", methods=["GET"])
def get_token(token_id):
    token = _engine().get_token(token_id)
    if token is None:
        raise AppError(ErrorCode.TOKEN_NOT_FOUND, details={"token_id": token_id})
    return _token_response(token)


# =============================================================================
# Batch and reporting
# =============================================================================

@bp.route("/reallocate", methods=["POST"])
def reallocate():
    data = _json_body()
    result = _engine().reallocate_batch(data.get("criteria") or {}, reason=data.get("reason", "other"))
    return jsonify({"ok": True, **result.to_dict()})


@bp.route("/statistics", methods=["GET"])
def statistics():
    date_from = parse_date(request.args.get("date_from"), "date_from")
    date_to = parse_date(request.args.get("date_to"), "date_to")
    return jsonify({"ok": True, "statistics": _engine().allocation_statistics(date_from, date_to)})
