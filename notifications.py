# notifications.py - in-app notifications for appointments and messages
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from events import (
    appointment_booked,
    appointment_updated,
    emit,
    message_sent,
    notification_created,
)
from extensions import db
from models import Notification

PREVIEW_LENGTH = 50
RESCHEDULE_FIELDS = ("therapist_id", "appointment_at", "duration_minutes")


def _fmt_when(dt):
    return dt.strftime("%b %d, %Y at %I:%M %p") if dt else "-"


def build_appointment_notification(kind: str, appointment) -> tuple[str, str]:
    when = _fmt_when(appointment.appointment_at)
    therapist = appointment.therapist
    who = therapist.name if therapist else "your therapist"
    duration = appointment.duration_minutes
    if kind == "booked":
        return ("Appointment Confirmed",
                f"Your appointment with {who} is scheduled for {when} ({duration} minutes). "
                f"Status: {appointment.status}.")
    if kind == "confirmed":
        return ("Appointment confirmed",
                f"Your appointment with {who} on {when} is confirmed.")
    if kind == "cancelled":
        return ("Appointment cancelled",
                f"Your appointment with {who} on {when} has been cancelled.")
    if kind == "completed":
        return ("Appointment completed",
                f"Your appointment with {who} on {when} is marked as completed.")
    if kind == "rescheduled":
        return ("Appointment updated",
                f"Your appointment with {who} is now scheduled for {when} ({duration} minutes).")
    return ("Appointment update", f"Your appointment on {when} was updated.")


def preview(text: str) -> str:
    text = text or ""
    return text[:PREVIEW_LENGTH] + ("..." if len(text) > PREVIEW_LENGTH else "")


def notify(user_id, kind, title, message):
    """Store a notification and push it to ``user.{id}``.

    Runs after the primary write has been committed; a failure here is logged
    and reported as None.
    """
    try:
        notification = Notification(user_id=user_id, type=kind, title=title, message=message, read=False)
        db.session.add(notification)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("[NOTIF] could not store %s notification for user %s: %s", kind, user_id, e)
        return None
    emit(notification_created, sender="notifications", notification=notification)
    return notification


# ----------------------------------------------------------------------
# event receivers
# ----------------------------------------------------------------------
@appointment_booked.connect
def _on_appointment_booked(sender, appointment=None, actor=None, **extra):
    title, text = build_appointment_notification("booked", appointment)
    notify(appointment.user_id, "appointment_booked", title, text)


@appointment_updated.connect
def _on_appointment_updated(sender, appointment=None, actor=None, previous_status=None, changed_fields=(),
                            **extra):
    if appointment.status != previous_status:
        if appointment.status not in ("confirmed", "cancelled", "completed"):
            return
        kind = appointment.status
    elif appointment.status != "cancelled" and set(changed_fields) & set(RESCHEDULE_FIELDS):
        kind = "rescheduled"
    else:
        return
    title, text = build_appointment_notification(kind, appointment)
    notify(appointment.user_id, f"appointment_{kind}", title, text)


@message_sent.connect
def _on_message_sent(sender, message=None, recipient_ids=(), **extra):
    sender_name = message.user.name if message.user else "Someone"
    for user_id in recipient_ids:
        notify(user_id, "new_message", "New Message",
               f"{sender_name} sent you a message: {preview(message.message)}")
