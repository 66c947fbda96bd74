# events.py - in-process domain events (blinker) with fire-and-forget delivery
from blinker import Namespace
from flask import current_app

_signals = Namespace()

user_status_changed = _signals.signal("user.status.changed")
message_sent = _signals.signal("message.sent")
notification_created = _signals.signal("notification.created")
appointment_booked = _signals.signal("appointment.booked")
appointment_updated = _signals.signal("appointment.updated")


def emit(signal, sender=None, **payload):
    """Deliver ``payload`` to every receiver of ``signal``.

    A receiver that raises is logged and skipped: events are side effects of a
    write that has already been committed and must never fail the caller.
    Returns the number of receivers that completed.
    """
    delivered = 0
    for receiver in list(signal.receivers_for(sender)):
        try:
            receiver(sender, **payload)
            delivered += 1
        except Exception as e:
            current_app.logger.warning("[EVENTS] %s receiver %r failed: %s", signal.name, receiver, e)
    return delivered
