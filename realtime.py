# realtime.py - Socket.IO push of domain events, with per-channel authorization
import re

from flask import current_app, request
from flask_socketio import emit as socket_emit, join_room, leave_room

from auth import user_from_token
from events import message_sent, notification_created, user_status_changed
from extensions import db, socketio
from models import Conversation, User

PUBLIC_CHANNELS = ("user-status", "online-users")
_USER_CHANNEL = re.compile(r"^user\.(\d+)$")
_CONVERSATION_CHANNEL = re.compile(r"^conversation(?:-presence)?\.(\d+)$")

# socket sid -> authenticated user id
_socket_users = {}


def channel_authorized(user, channel) -> bool:
    if user is None or not getattr(user, "is_authenticated", False) or not channel:
        return False
    if channel in PUBLIC_CHANNELS:
        return True
    m = _USER_CHANNEL.match(channel)
    if m:
        return int(m.group(1)) == user.id
    m = _CONVERSATION_CHANNEL.match(channel)
    if m:
        conversation = db.session.get(Conversation, int(m.group(1)))
        return conversation is not None and conversation.has_participant(user.id)
    return False


def broadcast(event, payload, channel):
    socketio.emit(event, payload, to=channel)


# ----------------------------------------------------------------------
# domain events -> channels
# ----------------------------------------------------------------------
@user_status_changed.connect
def _push_status(sender, **record):
    broadcast("user.status.changed", record, "user-status")


@message_sent.connect
def _push_message(sender, message=None, **extra):
    broadcast("message.sent", message.to_dict(), f"conversation.{message.conversation_id}")


@notification_created.connect
def _push_notification(sender, notification=None, **extra):
    broadcast("notification.created", notification.to_dict(), f"user.{notification.user_id}")


# ----------------------------------------------------------------------
# socket handlers
# ----------------------------------------------------------------------
def _on_connect(auth=None):
    token = (auth or {}).get("token") if isinstance(auth, dict) else None
    user = user_from_token(token or request.args.get("token"))
    if user is None:
        current_app.logger.info("[SOCKET] connection refused (no valid token)")
        return False
    _socket_users[request.sid] = user.id
    return True


def _on_disconnect(*args):
    _socket_users.pop(request.sid, None)


def _on_subscribe(data):
    channel = (data or {}).get("channel", "") if isinstance(data, dict) else ""
    user_id = _socket_users.get(request.sid)
    user = db.session.get(User, user_id) if user_id else None
    if not channel_authorized(user, channel):
        current_app.logger.info("[SOCKET] user %s denied channel %s", user_id, channel)
        socket_emit("subscription_error", {"channel": channel, "message": "This action is unauthorized."})
        return
    join_room(channel)
    socket_emit("subscription_succeeded", {"channel": channel})


def _on_unsubscribe(data):
    channel = (data or {}).get("channel", "") if isinstance(data, dict) else ""
    if channel:
        leave_room(channel)


def register_socket_handlers():
    """Bind the handlers to the server created by the latest ``socketio.init_app``."""
    socketio.on_event("connect", _on_connect)
    socketio.on_event("disconnect", _on_disconnect)
    socketio.on_event("subscribe", _on_subscribe)
    socketio.on_event("unsubscribe", _on_unsubscribe)
