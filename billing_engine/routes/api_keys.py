# billing_engine/routes/api_keys.py
from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from billing_engine.errors.domain import NotFoundError
from billing_engine.extensions import db
from billing_engine.models.user import User
from billing_engine.security.api_keys import ApiKeyGate

bp = Blueprint("api_keys", __name__, url_prefix="/api/api-keys")


def _current_user() -> User:
    user = db.session.get(User, get_jwt_identity())
    if user is None:
        raise NotFoundError("User not found")
    return user


@bp.route("", methods=["POST"])
@jwt_required()
def create_key():
    """Create a key. The raw key is in this response only."""
    user = _current_user()
    data = request.get_json(silent=True) or {}
    key, raw_key = ApiKeyGate().create_key(user, name=data.get("name"), scopes=data.get("scopes"))
    return jsonify({"key": raw_key, "apiKey": key.to_dict()}), 201


@bp.route("", methods=["GET"])
@jwt_required()
def list_keys():
    user = _current_user()
    return jsonify({"apiKeys": [k.to_dict() for k in ApiKeyGate().list_keys(user.id)]})


@bp.route("/<int:key_id>/revoke", methods=["POST"])
@jwt_required()
def revoke_key(key_id):
    user = _current_user()
    key = ApiKeyGate().revoke_key(user.id, key_id)
    return jsonify({"apiKey": key.to_dict()})
