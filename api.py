# api.py - REST API v1: appointments, presence, therapists, profiles, notifications,
# reports, resources and the AI companion
from datetime import datetime, time as dtime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import select
from sqlalchemy.orm import aliased

from ai_chat import send_ai_message
from errors import AuthorizationError, ValidationError
from extensions import db, login_manager
from models import (
    APPOINTMENT_STATUSES,
    AIMessage,
    Appointment,
    Conversation,
    ConversationParticipant,
    Group,
    Message,
    Notification,
    Profile,
    Report,
    Resource,
    Therapist,
    User,
)
from presence import PRESENCE_STATUSES, get_presence_tracker
from scheduling import MAX_DURATION_MINUTES, MIN_DURATION_MINUTES, BookingService
from validators import Validator, resource_fields, therapist_fields

api_bp = Blueprint("api", __name__)


@api_bp.before_request
def require_login():
    if not current_user.is_authenticated:
        return login_manager.unauthorized()


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def paginated(query, per_page, serialize=None):
    """Page envelope: data / current_page / last_page / per_page / total."""
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    per_page = min(max(request.args.get("per_page", per_page, type=int) or per_page, 1), 100)
    p = query.paginate(page=page, per_page=per_page, error_out=False)
    serialize = serialize or (lambda obj: obj.to_dict())
    return jsonify({
        "data": [serialize(item) for item in p.items],
        "current_page": p.page,
        "last_page": p.pages or 1,
        "per_page": p.per_page,
        "total": p.total,
    })


def actor():
    return current_user._get_current_object()


def ensure(condition, message=None):
    if not condition:
        raise AuthorizationError(message)


def _json():
    return request.get_json(silent=True) or {}


def _start_of_today():
    return datetime.combine(datetime.utcnow().date(), dtime.min)


def _apply(obj, cleaned):
    for field, value in cleaned.items():
        setattr(obj, field, value)


# ===================================================================
# Appointments
# ===================================================================
def _appointment_fields(v, partial=False):
    v.integer("user_id", exists=User)
    v.integer("therapist_id", required=True, exists=Therapist)
    v.datetime("appointment_at", required=True, not_before=None if partial else _start_of_today())
    v.integer("duration_minutes", min_value=MIN_DURATION_MINUTES, max_value=MAX_DURATION_MINUTES)
    v.string("status", choices=APPOINTMENT_STATUSES)
    v.string("notes", max_length=1000)


@api_bp.route("/appointments", methods=["GET"], endpoint="appointments_index")
def appointments_index():
    user = actor()
    q = Appointment.query
    user_id = request.args.get("user_id", type=int)
    if user.is_admin:
        if user_id:
            q = q.filter(Appointment.user_id == user_id)
    else:
        q = q.filter(Appointment.user_id == user.id)
    return paginated(q.order_by(Appointment.appointment_at.desc()), per_page=10)


@api_bp.route("/appointments/<int:appointment_id>", methods=["GET"], endpoint="appointments_show")
def appointments_show(appointment_id):
    appointment = db.get_or_404(Appointment, appointment_id)
    ensure(appointment.user_id == actor().id or actor().is_admin)
    return jsonify(appointment.to_dict())


@api_bp.route("/appointments", methods=["POST"], endpoint="appointments_store")
def appointments_store():
    user = actor()
    v = Validator(_json())
    _appointment_fields(v)
    cleaned = v.validate()

    patient_id = cleaned.get("user_id") or user.id
    ensure(patient_id == user.id or user.is_admin)

    appointment = BookingService(db.session).book(
        actor=user,
        user_id=patient_id,
        therapist_id=cleaned["therapist_id"],
        appointment_at=cleaned["appointment_at"],
        duration_minutes=cleaned.get("duration_minutes"),
        status=cleaned.get("status") or "pending",
        notes=cleaned.get("notes"),
        created_by="user",
    )
    return jsonify(appointment.to_dict()), 201


@api_bp.route("/appointments/<int:appointment_id>", methods=["PUT", "PATCH"], endpoint="appointments_update")
def appointments_update(appointment_id):
    user = actor()
    appointment = db.get_or_404(Appointment, appointment_id)
    ensure(appointment.user_id == user.id or user.is_admin)

    v = Validator(_json(), partial=True)
    _appointment_fields(v, partial=True)
    cleaned = v.validate()
    if "user_id" in cleaned:
        if cleaned["user_id"] is None:
            cleaned.pop("user_id")
        else:
            ensure(cleaned["user_id"] == user.id or user.is_admin)

    BookingService(db.session).reschedule(appointment, actor=user, **cleaned)
    return jsonify(appointment.to_dict())


@api_bp.route("/appointments/<int:appointment_id>", methods=["DELETE"], endpoint="appointments_destroy")
def appointments_destroy(appointment_id):
    appointment = db.get_or_404(Appointment, appointment_id)
    ensure(appointment.user_id == actor().id or actor().is_admin)
    db.session.delete(appointment)
    db.session.commit()
    return jsonify({"message": "Appointment deleted."})


# ===================================================================
# Presence
# ===================================================================
@api_bp.route("/user-status", methods=["POST"], endpoint="presence_update")
def presence_update():
    v = Validator(_json())
    v.string("status", required=True, choices=PRESENCE_STATUSES)
    cleaned = v.validate()
    user = actor()
    get_presence_tracker().set_status(user.id, user.name, cleaned["status"])
    return jsonify({"message": "Status updated successfully", "status": cleaned["status"]})


@api_bp.route("/heartbeat", methods=["POST"], endpoint="presence_heartbeat")
def presence_heartbeat():
    user = actor()
    get_presence_tracker().heartbeat(user.id, user.name)
    return jsonify({"message": "Heartbeat received"})


@api_bp.route("/online-users", methods=["GET"], endpoint="presence_online")
def presence_online():
    online = get_presence_tracker().list_online()
    return jsonify({"online_users": online, "count": len(online)})


@api_bp.route("/user-status/<int:user_id>", methods=["GET"], endpoint="presence_show")
def presence_show(user_id):
    return jsonify(get_presence_tracker().get_status(user_id))


# ===================================================================
# Therapists
# ===================================================================
@api_bp.route("/therapists", methods=["GET"], endpoint="therapists_index")
def therapists_index():
    q = Therapist.query
    specialty = (request.args.get("specialty") or "").strip()
    if specialty:
        q = q.filter(Therapist.specialty.ilike(f"%{specialty}%"))
    return paginated(q.order_by(Therapist.name.asc()), per_page=20)


@api_bp.route("/therapists/<int:therapist_id>", methods=["GET"], endpoint="therapists_show")
def therapists_show(therapist_id):
    return jsonify(db.get_or_404(Therapist, therapist_id).to_dict())


@api_bp.route("/therapists", methods=["POST"], endpoint="therapists_store")
def therapists_store():
    ensure(actor().is_admin)
    v = Validator(_json())
    therapist_fields(v)
    therapist = Therapist(**v.validate())
    db.session.add(therapist)
    db.session.commit()
    return jsonify(therapist.to_dict()), 201


@api_bp.route("/therapists/<int:therapist_id>", methods=["PUT", "PATCH"], endpoint="therapists_update")
def therapists_update(therapist_id):
    ensure(actor().is_admin)
    therapist = db.get_or_404(Therapist, therapist_id)
    v = Validator(_json(), partial=True)
    therapist_fields(v, ignore_id=therapist.id)
    _apply(therapist, v.validate())
    db.session.commit()
    return jsonify(therapist.to_dict())


@api_bp.route("/therapists/<int:therapist_id>", methods=["DELETE"], endpoint="therapists_destroy")
def therapists_destroy(therapist_id):
    ensure(actor().is_admin)
    therapist = db.get_or_404(Therapist, therapist_id)
    db.session.delete(therapist)
    db.session.commit()
    return jsonify({"message": "Therapist deleted."})


# ===================================================================
# Profiles
# ===================================================================
def unread_from(user_id, other_id):
    """Messages ``other_id`` sent to ``user_id`` after user_id last read their conversation."""
    other = aliased(ConversationParticipant)
    shared = select(other.conversation_id).where(other.user_id == other_id)
    mine = (
        ConversationParticipant.query
        .filter(ConversationParticipant.user_id == user_id,
                ConversationParticipant.conversation_id.in_(shared))
        .first()
    )
    if mine is None:
        return 0
    q = Message.query.filter(Message.conversation_id == mine.conversation_id, Message.user_id == other_id)
    if mine.last_read_at:
        q = q.filter(Message.created_at > mine.last_read_at)
    return q.count()


@api_bp.route("/profiles", methods=["GET"], endpoint="profiles_index")
def profiles_index():
    user = actor()
    flagged = (
        Profile.query
        .filter(Profile.online_status.is_(True), Profile.user_id != user.id)
        .order_by(Profile.id.asc())
        .limit(current_app.config.get("ONLINE_PROFILES_LIMIT", 50))
        .all()
    )
    online = get_presence_tracker().verify_online(flagged)
    data = []
    for profile in online:
        item = profile.to_dict(include_user=True)
        item["unread_count"] = unread_from(user.id, profile.user_id)
        data.append(item)
    return jsonify({"data": data, "total": len(data)})


@api_bp.route("/profiles/<int:profile_id>", methods=["GET"], endpoint="profiles_show")
def profiles_show(profile_id):
    return jsonify(db.get_or_404(Profile, profile_id).to_dict(include_user=True))


@api_bp.route("/profiles", methods=["POST"], endpoint="profiles_store")
def profiles_store():
    user = actor()
    data = _json()
    v = Validator(data)
    v.string("prefix", required=True, max_length=255)
    v.string("about", max_length=500)
    v.url("avatar")
    cleaned = v.validate()

    errors = {}
    if Profile.query.filter_by(user_id=user.id).first() is not None:
        errors["user_id"] = ["The user id has already been taken."]
    if Profile.query.filter_by(prefix=cleaned["prefix"]).first() is not None:
        errors["prefix"] = ["The prefix has already been taken."]
    if errors:
        raise ValidationError(errors)

    profile = Profile(user_id=user.id, online_status=False, **cleaned)
    db.session.add(profile)
    db.session.commit()
    return jsonify(profile.to_dict(include_user=True)), 201


@api_bp.route("/profiles/<int:profile_id>", methods=["PUT", "PATCH"], endpoint="profiles_update")
def profiles_update(profile_id):
    profile = db.get_or_404(Profile, profile_id)
    ensure(profile.user_id == actor().id or actor().is_admin)
    v = Validator(_json(), partial=True)
    v.string("prefix", required=True, max_length=255)
    v.string("about", max_length=500)
    v.url("avatar")
    cleaned = v.validate()
    if "prefix" in cleaned:
        taken = Profile.query.filter(Profile.prefix == cleaned["prefix"], Profile.id != profile.id).first()
        if taken is not None:
            raise ValidationError({"prefix": ["The prefix has already been taken."]})
    _apply(profile, cleaned)
    db.session.commit()
    return jsonify(profile.to_dict(include_user=True))


@api_bp.route("/profiles/<int:profile_id>", methods=["DELETE"], endpoint="profiles_destroy")
def profiles_destroy(profile_id):
    profile = db.get_or_404(Profile, profile_id)
    ensure(profile.user_id == actor().id or actor().is_admin)
    db.session.delete(profile)
    db.session.commit()
    return jsonify({"message": "Profile deleted."})


# ===================================================================
# Notifications
# ===================================================================
def _own_notification(notification_id):
    notification = db.get_or_404(Notification, notification_id)
    ensure(notification.user_id == actor().id)
    return notification


@api_bp.route("/notifications", methods=["GET"], endpoint="notifications_index")
def notifications_index():
    q = Notification.query.filter(Notification.user_id == actor().id)
    if request.args.get("unread") in ("1", "true"):
        q = q.filter(Notification.read.is_(False))
    return paginated(q.order_by(Notification.created_at.desc(), Notification.id.desc()), per_page=20)


@api_bp.route("/notifications/unread-count", methods=["GET"], endpoint="notifications_unread_count")
def notifications_unread_count():
    count = Notification.query.filter(
        Notification.user_id == actor().id, Notification.read.is_(False)
    ).count()
    return jsonify({"unread_count": count})


@api_bp.route("/notifications/mark-all-read", methods=["PUT", "POST"], endpoint="notifications_mark_all_read")
def notifications_mark_all_read():
    updated = (
        Notification.query
        .filter(Notification.user_id == actor().id, Notification.read.is_(False))
        .update({Notification.read: True, Notification.read_at: datetime.utcnow()},
                synchronize_session=False)
    )
    db.session.commit()
    return jsonify({"message": "All notifications marked as read.", "updated": updated})


@api_bp.route("/notifications/<int:notification_id>/mark-read", methods=["PUT", "POST"],
              endpoint="notifications_mark_read")
def notifications_mark_read(notification_id):
    notification = _own_notification(notification_id)
    notification.mark_as_read()
    db.session.commit()
    return jsonify(notification.to_dict())


@api_bp.route("/notifications/<int:notification_id>", methods=["GET"], endpoint="notifications_show")
def notifications_show(notification_id):
    return jsonify(_own_notification(notification_id).to_dict())


@api_bp.route("/notifications", methods=["POST"], endpoint="notifications_store")
def notifications_store():
    ensure(actor().is_admin)
    v = Validator(_json())
    v.integer("user_id", required=True, exists=User)
    v.string("type", required=True, max_length=50)
    v.string("title", required=True, max_length=255)
    v.string("message", required=True)
    notification = Notification(read=False, **v.validate())
    db.session.add(notification)
    db.session.commit()
    return jsonify(notification.to_dict()), 201


@api_bp.route("/notifications/<int:notification_id>", methods=["PUT", "PATCH"], endpoint="notifications_update")
def notifications_update(notification_id):
    notification = _own_notification(notification_id)
    v = Validator(_json(), partial=True)
    v.boolean("read")
    cleaned = v.validate()
    if cleaned.get("read"):
        notification.mark_as_read()
    elif cleaned.get("read") is False:
        notification.read = False
        notification.read_at = None
    db.session.commit()
    return jsonify(notification.to_dict())


@api_bp.route("/notifications/<int:notification_id>", methods=["DELETE"], endpoint="notifications_destroy")
def notifications_destroy(notification_id):
    db.session.delete(_own_notification(notification_id))
    db.session.commit()
    return jsonify({"message": "Notification deleted."})


# ===================================================================
# Reports
# ===================================================================
def _visible_report(report_id):
    report = db.get_or_404(Report, report_id)
    ensure(report.reporter_id == actor().id or actor().is_admin)
    return report


@api_bp.route("/reports", methods=["GET"], endpoint="reports_index")
def reports_index():
    q = Report.query
    if not actor().is_admin:
        q = q.filter(Report.reporter_id == actor().id)
    return paginated(q.order_by(Report.created_at.desc(), Report.id.desc()), per_page=20)


@api_bp.route("/reports/<int:report_id>", methods=["GET"], endpoint="reports_show")
def reports_show(report_id):
    return jsonify(_visible_report(report_id).to_dict())


@api_bp.route("/reports", methods=["POST"], endpoint="reports_store")
def reports_store():
    v = Validator(_json())
    v.integer("reported_user_id", exists=User)
    v.integer("message_id", exists=Message)
    v.integer("group_id", exists=Group)
    v.string("reason", required=True, max_length=255)
    v.string("details", max_length=2000)
    cleaned = v.validate()
    if not any(cleaned.get(k) for k in ("reported_user_id", "message_id", "group_id")):
        raise ValidationError({"reported_user_id": ["A report must target a user, a message or a group."]})

    report = Report(reporter_id=actor().id, resolved=False, **cleaned)
    db.session.add(report)
    db.session.commit()
    current_app.logger.info("[REPORT] report %s filed by user %s", report.id, actor().id)
    return jsonify(report.to_dict()), 201


@api_bp.route("/reports/<int:report_id>", methods=["PUT", "PATCH"], endpoint="reports_update")
def reports_update(report_id):
    report = _visible_report(report_id)
    v = Validator(_json(), partial=True)
    v.string("reason", required=True, max_length=255)
    v.string("details", max_length=2000)
    if actor().is_admin:
        v.boolean("resolved")
    _apply(report, v.validate())
    db.session.commit()
    return jsonify(report.to_dict())


@api_bp.route("/reports/<int:report_id>", methods=["DELETE"], endpoint="reports_destroy")
def reports_destroy(report_id):
    db.session.delete(_visible_report(report_id))
    db.session.commit()
    return jsonify({"message": "Report deleted."})


# ===================================================================
# Resources
# ===================================================================
@api_bp.route("/resources", methods=["GET"], endpoint="resources_index")
def resources_index():
    q = Resource.query
    kind = request.args.get("type")
    if kind:
        q = q.filter(Resource.type == kind)
    tag = (request.args.get("tag") or "").strip()
    if tag:
        q = q.filter(Resource.tags.ilike(f"%{tag}%"))
    return paginated(q.order_by(Resource.created_at.desc(), Resource.id.desc()), per_page=20)


@api_bp.route("/resources/<int:resource_id>", methods=["GET"], endpoint="resources_show")
def resources_show(resource_id):
    return jsonify(db.get_or_404(Resource, resource_id).to_dict())


@api_bp.route("/resources", methods=["POST"], endpoint="resources_store")
def resources_store():
    ensure(actor().is_admin)
    v = Validator(_json())
    resource_fields(v)
    resource = Resource(**v.validate())
    db.session.add(resource)
    db.session.commit()
    return jsonify(resource.to_dict()), 201


@api_bp.route("/resources/<int:resource_id>", methods=["PUT", "PATCH"], endpoint="resources_update")
def resources_update(resource_id):
    ensure(actor().is_admin)
    resource = db.get_or_404(Resource, resource_id)
    v = Validator(_json(), partial=True)
    resource_fields(v)
    _apply(resource, v.validate())
    db.session.commit()
    return jsonify(resource.to_dict())


@api_bp.route("/resources/<int:resource_id>", methods=["DELETE"], endpoint="resources_destroy")
def resources_destroy(resource_id):
    ensure(actor().is_admin)
    db.session.delete(db.get_or_404(Resource, resource_id))
    db.session.commit()
    return jsonify({"message": "Resource deleted."})


# ===================================================================
# AI companion
# ===================================================================
def _own_ai_message(ai_message_id):
    ai_message = db.get_or_404(AIMessage, ai_message_id)
    ensure(ai_message.user_id == actor().id)
    return ai_message


@api_bp.route("/ai-messages", methods=["GET"], endpoint="ai_messages_index")
def ai_messages_index():
    q = AIMessage.query.filter(AIMessage.user_id == actor().id)
    conversation_id = request.args.get("conversation_id", type=int)
    if conversation_id:
        q = q.filter(AIMessage.conversation_id == conversation_id)
    return paginated(q.order_by(AIMessage.created_at.desc(), AIMessage.id.desc()), per_page=20)


@api_bp.route("/ai-messages", methods=["POST"], endpoint="ai_messages_store")
def ai_messages_store():
    v = Validator(_json())
    v.string("prompt", required=True, max_length=2000)
    v.integer("conversation_id", exists=Conversation)
    cleaned = v.validate()
    if cleaned.get("conversation_id"):
        conversation = db.session.get(Conversation, cleaned["conversation_id"])
        ensure(conversation.has_participant(actor().id))

    ai_message, therapists = send_ai_message(actor(), cleaned["prompt"], cleaned.get("conversation_id"))
    return jsonify({
        "message": ai_message.to_dict(),
        "recommended_therapists": [
            {"id": t.id, "name": t.name, "specialty": t.specialty,
             "phone_number": t.phone_number, "email": t.email}
            for t in therapists
        ],
    }), 201


@api_bp.route("/ai-messages/<int:ai_message_id>", methods=["GET"], endpoint="ai_messages_show")
def ai_messages_show(ai_message_id):
    return jsonify(_own_ai_message(ai_message_id).to_dict())


@api_bp.route("/ai-messages/<int:ai_message_id>", methods=["DELETE"], endpoint="ai_messages_destroy")
def ai_messages_destroy(ai_message_id):
    db.session.delete(_own_ai_message(ai_message_id))
    db.session.commit()
    return jsonify({"message": "AI message deleted successfully"})
