# billing_engine/routes/usage.py
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from billing_engine.errors.domain import NotFoundError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.services.metering_service import MeteringService

bp = Blueprint("usage", __name__, url_prefix="/api/usage")


def _parse_timestamp(value: str, field: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", field=field)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@bp.route("/current", methods=["GET"])
@jwt_required()
def current_usage():
    """
    Usage counters for the caller's current billing window.

    Admins may pass ``userId`` to read another account. Explicit
    ``periodStart``/``periodEnd`` bounds outside the current window are
    read-only: a missing record is a 404, never created.
    """
    identity = get_jwt_identity()
    target_id = request.args.get("userId") or identity
    if target_id != identity and get_jwt().get("role") != "admin":
        return jsonify({"error": "forbidden", "message": "You may only read your own usage."}), 403

    user = db.session.get(User, target_id)
    if user is None:
        raise NotFoundError("User not found")

    service = MeteringService()
    period_start = request.args.get("periodStart")
    period_end = request.args.get("periodEnd")

    if not period_start and not period_end:
        _, record = service.current_usage(user)
        return jsonify({"usage": record.to_dict()})

    if not (period_start and period_end):
        raise ValidationError("periodStart and periodEnd must be given together", field="periodEnd")

    start = _parse_timestamp(period_start, "periodStart")
    end = _parse_timestamp(period_end, "periodEnd")

    window = service.current_window(user)
    if (start, end) == window.key:
        record = service.ledger.get_or_create(user.id, start, end)
    else:
        record = service.ledger.find(user.id, start, end)
        if record is None:
            raise NotFoundError("No usage recorded for that period")

    return jsonify({"usage": record.to_dict()})
