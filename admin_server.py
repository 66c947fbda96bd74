# admin_server.py - Peerly administration blueprint (JSON console, admins only)
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user
from sqlalchemy import func
from werkzeug.security import generate_password_hash

from auth import admin_required, create_user
from errors import ValidationError
from extensions import db
from models import (
    APPOINTMENT_CREATORS,
    APPOINTMENT_STATUSES,
    Appointment,
    Group,
    Notification,
    Report,
    Resource,
    Therapist,
    User,
)
from notifications import notify
from scheduling import MAX_DURATION_MINUTES, MIN_DURATION_MINUTES, BookingService
from validators import Validator, resource_fields, therapist_fields

admin_bp = Blueprint("admin", __name__)


def _json():
    return request.get_json(silent=True) or {}


def _admin():
    return current_user._get_current_object()


def _listing(query, serialize=None, per_page=25):
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    p = query.paginate(page=page, per_page=per_page, error_out=False)
    serialize = serialize or (lambda obj: obj.to_dict())
    return jsonify({
        "success": True,
        "items": [serialize(item) for item in p.items],
        "page": p.page,
        "pages": p.pages or 1,
        "total": p.total,
    })


def _apply(obj, cleaned):
    for field, value in cleaned.items():
        setattr(obj, field, value)


# --------------------- DASHBOARD / STATS ---------------------
@admin_bp.route("/api/stats", endpoint="api_stats")
@admin_required
def api_stats():
    by_status = dict(
        db.session.query(Appointment.status, func.count(Appointment.id)).group_by(Appointment.status).all()
    )
    stats = {
        "total_therapists": Therapist.query.count(),
        "total_users": User.query.count(),
        "total_groups": Group.query.count(),
        "open_reports": Report.query.filter(Report.resolved.is_(False)).count(),
        "total_appointments": sum(by_status.values()),
        "confirmed_appointments": by_status.get("confirmed", 0),
        "pending_appointments": by_status.get("pending", 0),
        "cancelled_appointments": by_status.get("cancelled", 0),
        "upcoming_appointments": Appointment.query.filter(
            Appointment.appointment_at >= datetime.utcnow(),
            Appointment.status != "cancelled",
        ).count(),
    }
    return jsonify(stats)


# --------------------- THERAPISTS ---------------------
@admin_bp.route("/therapists", methods=["GET"], endpoint="admin_therapists")
@admin_required
def admin_therapists():
    q = Therapist.query
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Therapist.name.ilike(like) | Therapist.specialty.ilike(like) | Therapist.email.ilike(like))
    return _listing(q.order_by(Therapist.name.asc()))


@admin_bp.route("/therapists", methods=["POST"], endpoint="add_therapist")
@admin_required
def add_therapist():
    v = Validator(_json())
    therapist_fields(v)
    therapist = Therapist(**v.validate())
    db.session.add(therapist)
    db.session.commit()
    current_app.logger.info("[ADMIN] therapist %s created by admin %s", therapist.id, _admin().id)
    return jsonify({"success": True, "therapist": therapist.to_dict()}), 201


@admin_bp.route("/therapists/<int:therapist_id>", methods=["PUT", "PATCH"], endpoint="edit_therapist")
@admin_required
def edit_therapist(therapist_id):
    therapist = db.get_or_404(Therapist, therapist_id)
    v = Validator(_json(), partial=True)
    therapist_fields(v, ignore_id=therapist.id)
    _apply(therapist, v.validate())
    db.session.commit()
    return jsonify({"success": True, "therapist": therapist.to_dict()})


@admin_bp.route("/therapists/<int:therapist_id>", methods=["DELETE"], endpoint="delete_therapist")
@admin_required
def delete_therapist(therapist_id):
    therapist = db.get_or_404(Therapist, therapist_id)
    db.session.delete(therapist)
    db.session.commit()
    current_app.logger.info("[ADMIN] therapist %s deleted by admin %s", therapist_id, _admin().id)
    return jsonify({"success": True, "message": "Therapist deleted."})


# --------------------- APPOINTMENTS ---------------------
def _appointment_fields(v, partial=False):
    v.integer("user_id", required=True, exists=User)
    v.integer("therapist_id", required=True, exists=Therapist)
    v.datetime("appointment_at", required=True, not_before=None if partial else datetime.utcnow())
    v.integer("duration_minutes", min_value=MIN_DURATION_MINUTES, max_value=MAX_DURATION_MINUTES)
    v.string("status", choices=APPOINTMENT_STATUSES)
    v.string("created_by", choices=APPOINTMENT_CREATORS)
    v.string("notes", max_length=1000)


@admin_bp.route("/appointments", methods=["GET"], endpoint="admin_appointments")
@admin_required
def admin_appointments():
    q = Appointment.query
    status = request.args.get("status")
    if status:
        q = q.filter(Appointment.status == status)
    created_by = request.args.get("created_by")
    if created_by:
        q = q.filter(Appointment.created_by == created_by)
    for arg in ("user_id", "therapist_id"):
        value = request.args.get(arg, type=int)
        if value:
            q = q.filter(getattr(Appointment, arg) == value)
    return _listing(q.order_by(Appointment.appointment_at.desc()))


@admin_bp.route("/appointments", methods=["POST"], endpoint="add_appointment")
@admin_required
def add_appointment():
    v = Validator(_json())
    _appointment_fields(v)
    cleaned = v.validate()
    appointment = BookingService(db.session).book(
        actor=_admin(),
        user_id=cleaned["user_id"],
        therapist_id=cleaned["therapist_id"],
        appointment_at=cleaned["appointment_at"],
        duration_minutes=cleaned.get("duration_minutes"),
        status=cleaned.get("status") or "pending",
        notes=cleaned.get("notes"),
        created_by=cleaned.get("created_by") or "admin",
    )
    return jsonify({"success": True, "appointment": appointment.to_dict()}), 201


@admin_bp.route("/appointments/<int:appointment_id>", methods=["PUT", "PATCH"], endpoint="edit_appointment")
@admin_required
def edit_appointment(appointment_id):
    appointment = db.get_or_404(Appointment, appointment_id)
    v = Validator(_json(), partial=True)
    _appointment_fields(v, partial=True)
    cleaned = v.validate()
    if cleaned.get("created_by", "") is None:
        cleaned.pop("created_by")
    BookingService(db.session).reschedule(appointment, actor=_admin(), **cleaned)
    return jsonify({"success": True, "appointment": appointment.to_dict()})


@admin_bp.route("/appointments/<int:appointment_id>/status", methods=["POST"],
                endpoint="update_appointment_status")
@admin_required
def update_appointment_status(appointment_id):
    data = _json()
    new_status = data.get("status")
    if new_status not in APPOINTMENT_STATUSES:
        return jsonify({"success": False, "message": "Invalid status"}), 400
    appointment = db.get_or_404(Appointment, appointment_id)
    BookingService(db.session).reschedule(appointment, actor=_admin(), status=new_status)
    return jsonify({"success": True, "message": f"Appointment {new_status}", "appointment": appointment.to_dict()})


@admin_bp.route("/appointments/<int:appointment_id>", methods=["DELETE"], endpoint="delete_appointment")
@admin_required
def delete_appointment(appointment_id):
    appointment = db.get_or_404(Appointment, appointment_id)
    db.session.delete(appointment)
    db.session.commit()
    return jsonify({"success": True, "message": "Appointment deleted."})


@admin_bp.route("/appointments/bulk-delete", methods=["POST"], endpoint="bulk_delete_appointments")
@admin_required
def bulk_delete_appointments():
    v = Validator(_json())
    v.id_list("ids", required=True, min_items=1)
    ids = v.validate()["ids"]
    deleted = Appointment.query.filter(Appointment.id.in_(ids)).delete(synchronize_session=False)
    db.session.commit()
    return jsonify({"success": True, "deleted": deleted})


# --------------------- GROUPS ---------------------
@admin_bp.route("/groups", methods=["GET"], endpoint="admin_groups")
@admin_required
def admin_groups():
    return _listing(Group.query.order_by(Group.created_at.desc()))


@admin_bp.route("/groups/<int:group_id>", methods=["PUT", "PATCH"], endpoint="edit_group")
@admin_required
def edit_group(group_id):
    group = db.get_or_404(Group, group_id)
    v = Validator(_json(), partial=True)
    v.string("title", required=True, max_length=255)
    v.string("bio", max_length=500)
    v.string("icon", max_length=255)
    v.integer("owner_id", exists=User)
    cleaned = v.validate()
    if cleaned.get("owner_id", "") is None:
        cleaned.pop("owner_id")
    _apply(group, cleaned)
    db.session.commit()
    return jsonify({"success": True, "group": group.to_dict()})


@admin_bp.route("/groups/<int:group_id>", methods=["DELETE"], endpoint="delete_group")
@admin_required
def delete_group(group_id):
    db.session.delete(db.get_or_404(Group, group_id))
    db.session.commit()
    return jsonify({"success": True, "message": "Group deleted."})


# --------------------- REPORTS ---------------------
@admin_bp.route("/reports", methods=["GET"], endpoint="admin_reports")
@admin_required
def admin_reports():
    q = Report.query
    resolved = request.args.get("resolved")
    if resolved in ("0", "false"):
        q = q.filter(Report.resolved.is_(False))
    elif resolved in ("1", "true"):
        q = q.filter(Report.resolved.is_(True))
    return _listing(q.order_by(Report.created_at.desc()))


@admin_bp.route("/reports/<int:report_id>", methods=["PUT", "PATCH"], endpoint="edit_report")
@admin_required
def edit_report(report_id):
    report = db.get_or_404(Report, report_id)
    v = Validator(_json(), partial=True)
    v.string("reason", required=True, max_length=255)
    v.string("details", max_length=2000)
    v.boolean("resolved")
    cleaned = v.validate()
    if cleaned.get("resolved", False) is None:
        cleaned.pop("resolved")
    _apply(report, cleaned)
    db.session.commit()
    return jsonify({"success": True, "report": report.to_dict()})


@admin_bp.route("/reports/<int:report_id>", methods=["DELETE"], endpoint="delete_report")
@admin_required
def delete_report(report_id):
    db.session.delete(db.get_or_404(Report, report_id))
    db.session.commit()
    return jsonify({"success": True, "message": "Report deleted."})


# --------------------- USERS ---------------------
@admin_bp.route("/users", methods=["GET"], endpoint="admin_users")
@admin_required
def admin_users():
    q = User.query
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(User.name.ilike(like) | User.email.ilike(like))
    return _listing(q.order_by(User.created_at.desc(), User.id.desc()))


@admin_bp.route("/users", methods=["POST"], endpoint="add_user")
@admin_required
def add_user():
    v = Validator(_json())
    v.string("name", required=True, max_length=255)
    v.email("email", required=True, unique=User)
    v.string("password", required=True, min_length=8)
    v.boolean("is_admin")
    cleaned = v.validate()
    user = create_user(cleaned["name"], cleaned["email"], cleaned["password"],
                       is_admin=bool(cleaned.get("is_admin")))
    current_app.logger.info("[ADMIN] user %s created by admin %s", user.id, _admin().id)
    return jsonify({"success": True, "user": user.to_dict()}), 201


@admin_bp.route("/users/<int:user_id>", methods=["PUT", "PATCH"], endpoint="edit_user")
@admin_required
def edit_user(user_id):
    user = db.get_or_404(User, user_id)
    v = Validator(_json(), partial=True)
    v.string("name", required=True, max_length=255)
    v.email("email", required=True, unique=User, ignore_id=user.id)
    v.string("password", min_length=8)
    v.boolean("is_admin")
    cleaned = v.validate()

    password = cleaned.pop("password", None)
    if password:
        user.password_hash = generate_password_hash(password)
    if cleaned.get("is_admin", False) is None:
        cleaned.pop("is_admin")
    if user.id == _admin().id and cleaned.get("is_admin") is False:
        raise ValidationError({"is_admin": ["You cannot remove your own admin rights."]})
    _apply(user, cleaned)
    db.session.commit()
    return jsonify({"success": True, "user": user.to_dict()})


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"], endpoint="delete_user")
@admin_required
def delete_user(user_id):
    user = db.get_or_404(User, user_id)
    if user.id == _admin().id:
        return jsonify({"success": False, "message": "You cannot delete your own account."}), 400
    try:
        db.session.query(Report).filter_by(reported_user_id=user.id).update(
            {Report.reported_user_id: None},
            synchronize_session=False,
        )
        db.session.delete(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("[ADMIN] delete user %s failed: %s", user_id, e)
        return jsonify({"success": False, "message": "Unable to delete this user."}), 500
    current_app.logger.info("[ADMIN] user %s deleted by admin %s", user_id, _admin().id)
    return jsonify({"success": True, "message": "User deleted."})


@admin_bp.route("/users/<int:user_id>/notifications", methods=["GET"], endpoint="user_notifications")
@admin_required
def user_notifications(user_id):
    user = db.get_or_404(User, user_id)
    q = Notification.query.filter(Notification.user_id == user.id)
    return _listing(q.order_by(Notification.created_at.desc(), Notification.id.desc()))


@admin_bp.route("/users/<int:user_id>/notifications", methods=["POST"], endpoint="send_user_notification")
@admin_required
def send_user_notification(user_id):
    user = db.get_or_404(User, user_id)
    v = Validator(_json())
    v.string("type", max_length=50)
    v.string("title", required=True, max_length=255)
    v.string("message", required=True)
    cleaned = v.validate()
    notification = notify(user.id, cleaned.get("type") or "admin", cleaned["title"], cleaned["message"])
    if notification is None:
        return jsonify({"success": False, "message": "Notification could not be stored."}), 500
    return jsonify({"success": True, "notification": notification.to_dict()}), 201


# --------------------- RESOURCES ---------------------
@admin_bp.route("/resources", methods=["GET"], endpoint="admin_resources")
@admin_required
def admin_resources():
    return _listing(Resource.query.order_by(Resource.created_at.desc(), Resource.id.desc()))


@admin_bp.route("/resources", methods=["POST"], endpoint="add_resource")
@admin_required
def add_resource():
    v = Validator(_json())
    resource_fields(v)
    resource = Resource(**v.validate())
    db.session.add(resource)
    db.session.commit()
    return jsonify({"success": True, "resource": resource.to_dict()}), 201


@admin_bp.route("/resources/<int:resource_id>", methods=["PUT", "PATCH"], endpoint="edit_resource")
@admin_required
def edit_resource(resource_id):
    resource = db.get_or_404(Resource, resource_id)
    v = Validator(_json(), partial=True)
    resource_fields(v)
    _apply(resource, v.validate())
    db.session.commit()
    return jsonify({"success": True, "resource": resource.to_dict()})


@admin_bp.route("/resources/<int:resource_id>", methods=["DELETE"], endpoint="delete_resource")
@admin_required
def delete_resource(resource_id):
    db.session.delete(db.get_or_404(Resource, resource_id))
    db.session.commit()
    return jsonify({"success": True, "message": "Resource deleted."})
