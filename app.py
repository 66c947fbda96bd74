# app.py - Peerly API (application factory, configuration, blueprints)
from __future__ import annotations

import os
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import cache, db, login_manager, socketio

# -------------------------------------------------------------------
# Environment
# -------------------------------------------------------------------
load_dotenv()

BRAND_NAME = os.getenv("BRAND_NAME", "Peerly")


# -------------------------------------------------------------------
# DB / SQLAlchemy + psycopg3
# -------------------------------------------------------------------
def _normalize_pg_uri(uri: str) -> str:
    """Normalize a Postgres URI for SQLAlchemy + psycopg3 and add sslmode=require when missing."""
    if not uri:
        return uri
    if uri.startswith("postgres://"):
        uri = "postgresql://" + uri[len("postgres://"):]
    if uri.startswith("postgresql+psycopg2://"):
        uri = "postgresql+psycopg://" + uri[len("postgresql+psycopg2://"):]
    elif uri.startswith("postgresql://"):
        uri = "postgresql+psycopg://" + uri[len("postgresql://"):]
    parsed = urlparse(uri)
    q = parse_qs(parsed.query)
    if parsed.scheme.startswith("postgresql+psycopg") and "sslmode" not in q:
        q["sslmode"] = ["require"]
        uri = urlunparse(parsed._replace(query=urlencode({k: v[0] for k, v in q.items()})))
    return uri


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _config_from_env() -> dict:
    config = {
        "SECRET_KEY": os.environ.get("SECRET_KEY", "dev-change-me"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,

        # presence store (Flask-Caching)
        "CACHE_TYPE": os.getenv("CACHE_TYPE", "SimpleCache"),
        "CACHE_DEFAULT_TIMEOUT": 300,
        "PRESENCE_TTL_SECONDS": _env_int("PRESENCE_TTL_SECONDS", 300),
        "ONLINE_PROFILES_LIMIT": _env_int("ONLINE_PROFILES_LIMIT", 50),

        # AI companion
        "PERPLEXITY_API_KEY": os.getenv("PERPLEXITY_API_KEY"),
        "AI_CHAT_URL": os.getenv("AI_CHAT_URL"),
        "AI_CHAT_MODEL": os.getenv("AI_CHAT_MODEL"),
        "AI_CHAT_TIMEOUT": _env_int("AI_CHAT_TIMEOUT", 30),

        # Socket.IO
        "SOCKETIO_MESSAGE_QUEUE": os.getenv("SOCKETIO_MESSAGE_QUEUE"),
        "SOCKETIO_CORS_ALLOWED_ORIGINS": os.getenv("SOCKETIO_CORS_ALLOWED_ORIGINS", "*"),
    }
    redis_url = os.getenv("CACHE_REDIS_URL") or os.getenv("REDIS_URL")
    if redis_url:
        config["CACHE_TYPE"] = "RedisCache"
        config["CACHE_REDIS_URL"] = redis_url

    db_url = (
        os.getenv("SQLALCHEMY_DATABASE_URI")
        or os.getenv("DATABASE_URL")
        or os.getenv("POSTGRES_URL")
        or os.getenv("DATABASE_URL_INTERNAL")
    )
    if db_url:
        db_url = _normalize_pg_uri(db_url)
        config["SQLALCHEMY_DATABASE_URI"] = db_url
        if db_url.startswith("postgresql"):
            config["SQLALCHEMY_ENGINE_OPTIONS"] = {
                "pool_pre_ping": True,
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
            }
    return config


# -------------------------------------------------------------------
# Flask app
# -------------------------------------------------------------------
def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(_config_from_env())
    if test_config:
        app.config.update(test_config)
    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        raise RuntimeError("Missing DATABASE_URL or SQLALCHEMY_DATABASE_URI environment variable")

    # Proxy (Render/Cloudflare)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    db.init_app(app)
    cache.init_app(app)
    login_manager.init_app(app)
    socketio.init_app(
        app,
        message_queue=app.config.get("SOCKETIO_MESSAGE_QUEUE"),
        cors_allowed_origins=app.config.get("SOCKETIO_CORS_ALLOWED_ORIGINS"),
    )
    app.extensions.setdefault("presence_store", cache)

    # blueprints import the models, receivers and socket handlers they need
    from admin_server import admin_bp
    from api import api_bp
    from auth import auth_bp
    from commands import register_commands
    from errors import register_error_handlers
    from messaging import messaging_bp
    import notifications  # noqa: F401  (event receivers)
    from realtime import register_socket_handlers

    app.register_blueprint(auth_bp, url_prefix="/api")
    app.register_blueprint(api_bp, url_prefix="/api/v1")
    app.register_blueprint(messaging_bp, url_prefix="/api/v1")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    register_error_handlers(app)
    register_commands(app)
    register_socket_handlers()

    @app.route("/health", endpoint="health")
    def health():
        return jsonify({"status": "ok", "service": BRAND_NAME})

    app.logger.info("[BOOT] %s API ready (cache=%s)", BRAND_NAME, app.config.get("CACHE_TYPE"))
    return app


if __name__ == "__main__":
    application = create_app()
    socketio.run(application, host="0.0.0.0", port=_env_int("PORT", 5000))
