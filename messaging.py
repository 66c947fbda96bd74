# messaging.py - REST API v1: direct conversations, messages, groups and group messages
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import select

from api import actor, ensure, paginated, require_login
from errors import AuthorizationError
from events import emit, message_sent
from extensions import db
from models import (
    Conversation,
    ConversationParticipant,
    Group,
    GroupMember,
    GroupMessage,
    Message,
    User,
)
from validators import Validator

messaging_bp = Blueprint("messaging", __name__)
messaging_bp.before_request(require_login)

MESSAGE_MAX_LENGTH = 5000


def _json():
    return request.get_json(silent=True) or {}


# ===================================================================
# Conversations
# ===================================================================
def _participant_conversation(conversation_id):
    conversation = db.get_or_404(Conversation, conversation_id)
    ensure(conversation.has_participant(actor().id))
    return conversation


def find_conversation_between(user_ids):
    """The conversation whose participant set is exactly ``user_ids``, if any."""
    wanted = set(user_ids)
    candidates = (
        Conversation.query
        .join(ConversationParticipant)
        .filter(ConversationParticipant.user_id == min(wanted))
        .all()
    )
    for conversation in candidates:
        if set(conversation.user_ids) == wanted:
            return conversation
    return None


@messaging_bp.route("/conversations", methods=["GET"], endpoint="conversations_index")
def conversations_index():
    q = (
        Conversation.query
        .join(ConversationParticipant)
        .filter(ConversationParticipant.user_id == actor().id)
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
    )
    return paginated(q, per_page=20)


@messaging_bp.route("/conversations/<int:conversation_id>", methods=["GET"], endpoint="conversations_show")
def conversations_show(conversation_id):
    return jsonify(_participant_conversation(conversation_id).to_dict(include_messages=True))


@messaging_bp.route("/conversations", methods=["POST"], endpoint="conversations_store")
def conversations_store():
    v = Validator(_json())
    v.id_list("user_ids", required=True, min_items=2, exists=User)
    user_ids = v.validate()["user_ids"]
    ensure(actor().id in user_ids)

    existing = find_conversation_between(user_ids)
    if existing is not None:
        return jsonify(existing.to_dict()), 200

    conversation = Conversation()
    conversation.participants = [ConversationParticipant(user_id=uid) for uid in user_ids]
    db.session.add(conversation)
    db.session.commit()
    return jsonify(conversation.to_dict()), 201


@messaging_bp.route("/conversations/<int:conversation_id>", methods=["PUT", "PATCH"],
                    endpoint="conversations_update")
def conversations_update(conversation_id):
    conversation = _participant_conversation(conversation_id)
    v = Validator(_json(), partial=True)
    v.id_list("user_ids", required=True, min_items=2, exists=User)
    cleaned = v.validate()
    if "user_ids" in cleaned:
        user_ids = cleaned["user_ids"]
        ensure(actor().id in user_ids)
        kept = {p.user_id: p for p in conversation.participants}
        conversation.participants = [
            kept.get(uid) or ConversationParticipant(user_id=uid) for uid in user_ids
        ]
        conversation.updated_at = datetime.utcnow()
        db.session.commit()
    return jsonify(conversation.to_dict())


@messaging_bp.route("/conversations/<int:conversation_id>", methods=["DELETE"],
                    endpoint="conversations_destroy")
def conversations_destroy(conversation_id):
    db.session.delete(_participant_conversation(conversation_id))
    db.session.commit()
    return jsonify({"message": "Conversation deleted."})


@messaging_bp.route("/conversations/<int:conversation_id>/mark-read", methods=["POST"],
                    endpoint="conversations_mark_read")
def conversations_mark_read(conversation_id):
    conversation = db.get_or_404(Conversation, conversation_id)
    membership = next((p for p in conversation.participants if p.user_id == actor().id), None)
    if membership is None:
        raise AuthorizationError("Not authorized")
    membership.last_read_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"message": "Conversation marked as read"})


# ===================================================================
# Messages
# ===================================================================
def _own_message(message_id):
    message = db.get_or_404(Message, message_id)
    ensure(message.user_id == actor().id)
    return message


@messaging_bp.route("/messages", methods=["GET"], endpoint="messages_index")
def messages_index():
    conversation_id = request.args.get("conversation_id", type=int)
    if conversation_id:
        _participant_conversation(conversation_id)
        q = Message.query.filter(Message.conversation_id == conversation_id)
    else:
        mine = select(ConversationParticipant.conversation_id).where(
            ConversationParticipant.user_id == actor().id
        )
        q = Message.query.filter(Message.conversation_id.in_(mine))
    return paginated(q.order_by(Message.created_at.asc(), Message.id.asc()), per_page=50)


@messaging_bp.route("/messages/<int:message_id>", methods=["GET"], endpoint="messages_show")
def messages_show(message_id):
    message = db.get_or_404(Message, message_id)
    ensure(message.conversation.has_participant(actor().id))
    return jsonify(message.to_dict())


@messaging_bp.route("/messages", methods=["POST"], endpoint="messages_store")
def messages_store():
    v = Validator(_json())
    v.integer("conversation_id", required=True, exists=Conversation)
    v.string("message", required=True, max_length=MESSAGE_MAX_LENGTH)
    cleaned = v.validate()

    sender = actor()
    conversation = _participant_conversation(cleaned["conversation_id"])
    message = Message(conversation_id=conversation.id, user_id=sender.id, message=cleaned["message"])
    db.session.add(message)
    conversation.updated_at = datetime.utcnow()
    db.session.commit()

    recipients = [uid for uid in conversation.user_ids if uid != sender.id]
    emit(message_sent, sender="messaging", message=message, recipient_ids=recipients)
    return jsonify(message.to_dict()), 201


@messaging_bp.route("/messages/<int:message_id>", methods=["PUT", "PATCH"], endpoint="messages_update")
def messages_update(message_id):
    message = _own_message(message_id)
    v = Validator(_json(), partial=True)
    v.string("message", required=True, max_length=MESSAGE_MAX_LENGTH)
    cleaned = v.validate()
    if "message" in cleaned:
        message.message = cleaned["message"]
        db.session.commit()
    return jsonify(message.to_dict())


@messaging_bp.route("/messages/<int:message_id>", methods=["DELETE"], endpoint="messages_destroy")
def messages_destroy(message_id):
    db.session.delete(_own_message(message_id))
    db.session.commit()
    return jsonify({"message": "Message deleted."})


# ===================================================================
# Groups
# ===================================================================
def _group_fields(v):
    v.string("title", required=True, max_length=255)
    v.string("bio", max_length=500)
    v.string("icon", max_length=255)


def _group_unread(group, user_id):
    membership = group.membership_for(user_id)
    if membership is None:
        return 0
    q = GroupMessage.query.filter(GroupMessage.group_id == group.id, GroupMessage.user_id != user_id)
    if membership.last_read_at:
        q = q.filter(GroupMessage.created_at > membership.last_read_at)
    return q.count()


def _owned_group(group_id, verb):
    group = db.get_or_404(Group, group_id)
    if group.owner_id != actor().id:
        raise AuthorizationError(f"Only the group owner can {verb} this group")
    return group


@messaging_bp.route("/groups", methods=["GET"], endpoint="groups_index")
def groups_index():
    user_id = actor().id

    def serialize(group):
        data = group.to_dict()
        data["is_member"] = group.membership_for(user_id) is not None
        data["unread_count"] = _group_unread(group, user_id)
        return data

    return paginated(Group.query.order_by(Group.created_at.desc(), Group.id.desc()), per_page=10,
                     serialize=serialize)


@messaging_bp.route("/groups/<int:group_id>", methods=["GET"], endpoint="groups_show")
def groups_show(group_id):
    return jsonify(db.get_or_404(Group, group_id).to_dict())


@messaging_bp.route("/groups", methods=["POST"], endpoint="groups_store")
def groups_store():
    v = Validator(_json())
    _group_fields(v)
    v.id_list("user_ids", exists=User)
    cleaned = v.validate()

    owner = actor()
    member_ids = [owner.id] + [uid for uid in (cleaned.pop("user_ids", None) or []) if uid != owner.id]
    group = Group(owner_id=owner.id, **cleaned)
    group.members = [GroupMember(user_id=uid) for uid in member_ids]
    db.session.add(group)
    db.session.commit()
    current_app.logger.info("[GROUP] group %s created by user %s (%d members)", group.id, owner.id, len(member_ids))
    return jsonify(group.to_dict()), 201


@messaging_bp.route("/groups/<int:group_id>", methods=["PUT", "PATCH"], endpoint="groups_update")
def groups_update(group_id):
    group = _owned_group(group_id, "update")
    v = Validator(_json(), partial=True)
    _group_fields(v)
    for field, value in v.validate().items():
        setattr(group, field, value)
    db.session.commit()
    return jsonify(group.to_dict())


@messaging_bp.route("/groups/<int:group_id>", methods=["DELETE"], endpoint="groups_destroy")
def groups_destroy(group_id):
    db.session.delete(_owned_group(group_id, "delete"))
    db.session.commit()
    return jsonify({"message": "Group deleted successfully"})


@messaging_bp.route("/groups/<int:group_id>/join", methods=["POST"], endpoint="groups_join")
def groups_join(group_id):
    group = db.get_or_404(Group, group_id)
    user_id = actor().id
    if group.membership_for(user_id) is not None:
        return jsonify({"message": "Already a member of this group."}), 400
    group.members.append(GroupMember(user_id=user_id))
    db.session.commit()
    return jsonify({"message": "Successfully joined the group.", "group": group.to_dict()})


@messaging_bp.route("/groups/<int:group_id>/leave", methods=["POST"], endpoint="groups_leave")
def groups_leave(group_id):
    group = db.get_or_404(Group, group_id)
    user_id = actor().id
    if group.owner_id == user_id:
        db.session.delete(group)
        db.session.commit()
        return jsonify({"message": "Group deleted successfully (owner left).", "deleted": True})
    membership = group.membership_for(user_id)
    if membership is None:
        return jsonify({"message": "Not a member of this group."}), 400
    group.members.remove(membership)
    db.session.commit()
    return jsonify({"message": "Successfully left the group.", "group": group.to_dict()})


@messaging_bp.route("/groups/<int:group_id>/mark-read", methods=["POST"], endpoint="groups_mark_read")
def groups_mark_read(group_id):
    group = db.get_or_404(Group, group_id)
    membership = group.membership_for(actor().id)
    if membership is None:
        raise AuthorizationError("Not authorized")
    membership.last_read_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"message": "Group marked as read"})


# -------------------------------------------------------------------
# Group messages
# -------------------------------------------------------------------
def _member_group(group_id):
    group = db.get_or_404(Group, group_id)
    ensure(group.membership_for(actor().id) is not None)
    return group


@messaging_bp.route("/groups/<int:group_id>/messages", methods=["GET"], endpoint="group_messages_index")
def group_messages_index(group_id):
    group = _member_group(group_id)
    q = GroupMessage.query.filter(GroupMessage.group_id == group.id)
    return paginated(q.order_by(GroupMessage.created_at.asc(), GroupMessage.id.asc()), per_page=50)


@messaging_bp.route("/groups/<int:group_id>/messages", methods=["POST"], endpoint="group_messages_store")
def group_messages_store(group_id):
    group = _member_group(group_id)
    v = Validator(_json())
    v.string("message", required=True, max_length=MESSAGE_MAX_LENGTH)
    cleaned = v.validate()
    message = GroupMessage(group_id=group.id, user_id=actor().id, message=cleaned["message"])
    db.session.add(message)
    db.session.commit()
    return jsonify(message.to_dict()), 201


@messaging_bp.route("/groups/<int:group_id>/messages/<int:message_id>", methods=["DELETE"],
                    endpoint="group_messages_destroy")
def group_messages_destroy(group_id, message_id):
    message = GroupMessage.query.filter_by(id=message_id, group_id=group_id).first_or_404()
    ensure(message.user_id == actor().id or message.group.owner_id == actor().id)
    db.session.delete(message)
    db.session.commit()
    return jsonify({"message": "Message deleted."})
