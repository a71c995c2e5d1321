from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from lifeline.core.models import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
    }


@auth_bp.post("/login")
def login_post():
    data = request.get_json(silent=True) or request.form
    identifier = (data.get("email") or data.get("username") or "").strip().lower()
    password = data.get("password") or ""
    user = User.query.filter((User.email == identifier) | (User.username == identifier)).first()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "Credenciales inválidas"}), 401
    login_user(user)
    return jsonify({"user": user_to_dict(user)})


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.get("/me")
@login_required
def me():
    return jsonify({"user": user_to_dict(current_user)})
