# extensions.py - shared Flask extension instances (bound in app.create_app)
import sqlite3

from flask_caching import Cache
from flask_login import LoginManager
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()
cache = Cache()
login_manager = LoginManager()
socketio = SocketIO()


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record):
    # ondelete CASCADE / SET NULL rules are only enforced by SQLite with this pragma
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
