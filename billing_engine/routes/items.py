# billing_engine/routes/items.py
"""
Metered item creation.

Counts ``items_created`` against the caller's plan. Persisting the item
itself belongs to the content store; this endpoint enforces and records the
quota around it.
"""

from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from billing_engine.errors.domain import NotFoundError, ValidationError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.services.metering_service import MeteringService

bp = Blueprint("items", __name__, url_prefix="/api/items")


@bp.route("", methods=["POST"])
@jwt_required()
def create_item():
    user = db.session.get(User, get_jwt_identity())
    if user is None:
        raise NotFoundError("User not found")

    data = request.get_json(silent=True) or {}
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Item name is required", field="name")

    service = MeteringService()
    decision = service.authorize_user(user, "items_created")
    if not decision.ok:
        raise decision.limit_error()

    record = service.record(decision, "items_created", 1)

    limit = decision.entitlement.limit
    return jsonify({
        "ok": True,
        "item": {"name": name.strip(), "userId": user.id},
        "usage": {
            "itemsCreated": record.items_created,
            "remaining": max(limit - record.items_created, 0) if limit is not None else None,
            "limit": limit,
        },
    }), 201
