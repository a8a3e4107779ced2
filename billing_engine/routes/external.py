# billing_engine/routes/external.py
from flask import Blueprint, jsonify, request

from billing_engine.security.api_keys import extract_bearer_key
from billing_engine.services.metering_service import MeteringService

bp = Blueprint("external", __name__, url_prefix="/api/external")


@bp.route("/do-thing", methods=["POST"])
def do_thing():
    """Metered example endpoint: one API call per successful request. Needs a ``write`` key."""
    service = MeteringService()
    decision = service.authorize(extract_bearer_key(request.headers.get("Authorization")), "api_calls",
                                 required_scope="write")

    if not decision.ok:
        if decision.entitlement is not None:
            raise decision.limit_error()
        return jsonify({"error": decision.error}), decision.status

    # The metered work happens here; usage is counted only once it succeeded.
    record = service.record(decision, "api_calls", 1)

    limit = decision.entitlement.limit
    return jsonify({
        "ok": True,
        "message": "Action completed successfully",
        "usage": {
            "apiCalls": record.api_calls,
            "remaining": max(limit - record.api_calls, 0) if limit is not None else None,
        },
    })
