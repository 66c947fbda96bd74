# auth.py - registration, login/logout and bearer-token authentication
import hashlib
import secrets
from datetime import datetime
from functools import wraps
from urllib.parse import quote

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from errors import ValidationError
from extensions import db, login_manager
from models import ApiToken, Profile, User
from presence import get_presence_tracker
from validators import Validator

auth_bp = Blueprint("auth", __name__)

AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


# =========================
#   TOKENS
# =========================
def _hash_token(tok: str) -> str:
    return hashlib.sha256(tok.encode("utf-8")).hexdigest()


def issue_token(user, name="api-token") -> str:
    """Create a bearer token; the plain value is returned once and never stored."""
    plain = f"{user.id}|{secrets.token_urlsafe(40)}"
    db.session.add(ApiToken(user_id=user.id, name=name, token_hash=_hash_token(plain)))
    db.session.commit()
    return plain


def revoke_tokens(user):
    ApiToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    db.session.commit()


def user_from_token(token):
    if not token:
        return None
    row = ApiToken.query.filter_by(token_hash=_hash_token(token)).first()
    if row is None:
        return None
    row.last_used_at = datetime.utcnow()
    db.session.commit()
    return row.user


def _bearer_token():
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@login_manager.request_loader
def _load_user_from_request(req):
    return user_from_token(_bearer_token())


@login_manager.user_loader
def _load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"message": "Unauthenticated."}), 401


def admin_required(view):
    """login_required + is_admin, answering 403 JSON otherwise."""
    @wraps(view)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({"success": False, "message": "Access denied"}), 403
        return view(*args, **kwargs)

    return wrapper


# =========================
#   ACCOUNTS
# =========================
def create_user(name, email, password, is_admin=False):
    """Create the user and its profile (prefix ``user_{id}``, generated avatar)."""
    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(password),
        is_admin=is_admin,
    )
    db.session.add(user)
    db.session.flush()
    db.session.add(Profile(
        user_id=user.id,
        prefix=f"user_{user.id}",
        about=None,
        online_status=False,
        avatar=AVATAR_URL.format(seed=quote(name)),
    ))
    db.session.commit()
    return user


@auth_bp.route("/register", methods=["POST"], endpoint="register")
def register():
    data = request.get_json(silent=True) or {}
    v = Validator(data)
    v.string("name", required=True, max_length=255)
    v.email("email", required=True, unique=User)
    v.string("password", required=True, min_length=8)
    if "password" in v.cleaned and data.get("password") != data.get("password_confirmation"):
        v.cleaned.pop("password")
        v.add_error("password", "The password field confirmation does not match.")
    cleaned = v.validate()

    try:
        user = create_user(cleaned["name"], cleaned["email"], data["password"])
    except IntegrityError:
        db.session.rollback()
        raise ValidationError({"email": ["The email has already been taken."]})
    token = issue_token(user)
    current_app.logger.info("[AUTH] user %s registered", user.id)
    return jsonify({"message": "Registration successful", "user": user.to_dict(), "token": token}), 201


@auth_bp.route("/login", methods=["POST"], endpoint="login")
def login():
    data = request.get_json(silent=True) or {}
    v = Validator(data)
    v.email("email", required=True)
    v.string("password", required=True)
    cleaned = v.validate()

    user = User.query.filter_by(email=cleaned["email"]).first()
    if not user or not check_password_hash(user.password_hash, data.get("password") or ""):
        current_app.logger.info("[AUTH] failed login for %s", cleaned["email"])
        raise ValidationError({"email": ["The provided credentials do not match our records."]})

    get_presence_tracker().heartbeat(user.id, user.name)
    token = issue_token(user)
    return jsonify({"message": "Login successful", "user": user.to_dict(), "token": token}), 200


@auth_bp.route("/logout", methods=["POST"], endpoint="logout")
@login_required
def logout():
    user = current_user._get_current_object()
    get_presence_tracker().forget(user.id)
    revoke_tokens(user)
    return jsonify({"message": "Logout successful"}), 200


@auth_bp.route("/user", methods=["GET"], endpoint="me")
@login_required
def me():
    user = current_user._get_current_object()
    data = user.to_dict()
    data["profile"] = user.profile.to_dict() if user.profile else None
    return jsonify(data)
