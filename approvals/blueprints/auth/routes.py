"""
Authentication Routes

Provides:
- /auth/me   the authenticated user (credentials check for API clients)

Rules:
- Every request carries HTTP Basic credentials; there is no login session.
- Only active users authenticate (see security.load_user_from_request).
"""

from flask import Blueprint, jsonify
from flask_login import current_user

from ...security import api_login_required

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.route("/me", methods=["GET"])
@api_login_required
def me():
    """Return the authenticated user."""
    return jsonify({"success": True, "user": current_user.to_dict()})
