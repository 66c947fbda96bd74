# scheduling.py - appointment double-booking detection and transactional booking
from datetime import timedelta
from typing import NamedTuple, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from errors import ApiError, ValidationError
from events import appointment_booked, appointment_updated, emit
from models import Appointment, Therapist, User

DEFAULT_DURATION_MINUTES = 60
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 240
CANCELLED = "cancelled"

# Fields whose change moves an appointment in time or between calendars.
TIMING_FIELDS = ("user_id", "therapist_id", "appointment_at", "duration_minutes")
EDITABLE_FIELDS = TIMING_FIELDS + ("status", "notes", "created_by")


def normalize_duration(minutes) -> int:
    """Missing, zero or negative durations count as the default session length."""
    try:
        minutes = int(minutes or 0)
    except (TypeError, ValueError):
        minutes = 0
    return minutes if minutes > 0 else DEFAULT_DURATION_MINUTES


def checked_duration(minutes) -> int:
    """Normalized duration, refused outside the bookable range.

    The candidate query looks back MAX_DURATION_MINUTES, so nothing longer may be stored.
    """
    duration = normalize_duration(minutes)
    if not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
        raise ValidationError({"duration_minutes": [
            f"The duration minutes field must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}."
        ]})
    return duration


def appointment_window(start, duration_minutes):
    return start, start + timedelta(minutes=normalize_duration(duration_minutes))


def intervals_overlap(a_start, a_end, b_start, b_end) -> bool:
    # half-open intervals: [10:00, 11:00) and [11:00, 12:00) do not overlap
    return not (a_end <= b_start or a_start >= b_end)


class ConflictReport(NamedTuple):
    party: str  # "therapist" | "patient"
    appointment: Appointment

    @property
    def message(self) -> str:
        if self.party == "therapist":
            return ("The therapist already has an appointment during this time. "
                    "Please choose a different time slot.")
        return ("The patient already has an appointment during this time. "
                "Please choose a different time slot.")


class SchedulingConflict(ApiError):
    status_code = 409

    def __init__(self, report: ConflictReport):
        super().__init__(report.message)
        self.report = report
        self.party = report.party

    def to_dict(self):
        return {
            "message": self.message,
            "party": self.party,
            "errors": {"appointment_at": [self.message]},
        }


class AppointmentRepository:
    """Read side of the conflict check.

    The SQL filter only narrows candidates (start before the candidate end and
    no earlier than the longest allowed session before the candidate start);
    the exact half-open test runs on the narrowed rows.
    """

    def __init__(self, session):
        self.session = session

    def find_overlapping_for_therapist(self, therapist_id, start, end, exclude_id=None):
        return self._find_overlapping(Appointment.therapist_id == therapist_id, start, end, exclude_id)

    def find_overlapping_for_patient(self, user_id, start, end, exclude_id=None):
        return self._find_overlapping(Appointment.user_id == user_id, start, end, exclude_id)

    def _find_overlapping(self, criterion, start, end, exclude_id):
        lookback = start - timedelta(minutes=MAX_DURATION_MINUTES)
        q = (
            self.session.query(Appointment)
            .filter(criterion)
            .filter(Appointment.status != CANCELLED)
            .filter(Appointment.appointment_at < end, Appointment.appointment_at > lookback)
        )
        if exclude_id is not None:
            q = q.filter(Appointment.id != exclude_id)
        rows = q.order_by(Appointment.appointment_at.asc(), Appointment.id.asc()).all()
        return [
            a for a in rows
            if intervals_overlap(start, end, *appointment_window(a.appointment_at, a.duration_minutes))
        ]


class ConflictDetector:
    def __init__(self, repository: AppointmentRepository):
        self.repository = repository

    def check(self, subject_id, counterpart_id, start, duration_minutes=None,
              exclude_id=None) -> Optional[ConflictReport]:
        """Return the first clash for the therapist, then for the patient, or None.

        Pure query: nothing is written.
        """
        start, end = appointment_window(start, duration_minutes)
        clashes = self.repository.find_overlapping_for_therapist(counterpart_id, start, end, exclude_id)
        if clashes:
            return ConflictReport("therapist", clashes[0])
        clashes = self.repository.find_overlapping_for_patient(subject_id, start, end, exclude_id)
        if clashes:
            return ConflictReport("patient", clashes[0])
        return None


class BookingService:
    """Check-then-write inside one transaction.

    Both parties' rows are locked (SELECT ... FOR UPDATE) before the check, so
    two bookings touching the same therapist or patient run one after the other.
    The partial unique indexes on (therapist_id|user_id, appointment_at) catch
    anything that still slips through; that IntegrityError is reported as a
    conflict.
    """

    def __init__(self, session, detector: Optional[ConflictDetector] = None):
        self.session = session
        self.detector = detector or ConflictDetector(AppointmentRepository(session))

    def _lock_parties(self, user_id, therapist_id):
        self.session.query(Therapist.id).filter(Therapist.id == therapist_id).with_for_update().first()
        self.session.query(User.id).filter(User.id == user_id).with_for_update().first()

    def _reclassify(self, error, user_id, therapist_id, start, duration, exclude_id=None):
        report = self.detector.check(user_id, therapist_id, start, duration, exclude_id=exclude_id)
        if report is None:
            return None
        current_app.logger.warning("[BOOKING] concurrent booking rejected by unique index: %s",
                                   getattr(error, "orig", error))
        return SchedulingConflict(report)

    def book(self, *, actor, user_id, therapist_id, appointment_at, duration_minutes=None,
             status="pending", notes=None, created_by="user") -> Appointment:
        duration = checked_duration(duration_minutes)
        try:
            self._lock_parties(user_id, therapist_id)
            if status != CANCELLED:
                report = self.detector.check(user_id, therapist_id, appointment_at, duration)
                if report is not None:
                    raise SchedulingConflict(report)
            appointment = Appointment(
                user_id=user_id,
                therapist_id=therapist_id,
                appointment_at=appointment_at,
                duration_minutes=duration,
                status=status or "pending",
                notes=notes,
                created_by=created_by or "user",
            )
            self.session.add(appointment)
            self.session.commit()
        except SchedulingConflict as e:
            self.session.rollback()
            current_app.logger.info("[BOOKING] rejected for actor %s: %s conflict", getattr(actor, "id", None), e.party)
            raise
        except IntegrityError as e:
            self.session.rollback()
            conflict = self._reclassify(e, user_id, therapist_id, appointment_at, duration)
            if conflict is None:
                raise
            raise conflict from e

        current_app.logger.info(
            "[BOOKING] appointment %s booked by %s (therapist=%s patient=%s at=%s dur=%s)",
            appointment.id, getattr(actor, "id", None), therapist_id, user_id,
            appointment.appointment_at, appointment.duration_minutes,
        )
        emit(appointment_booked, sender="scheduling", appointment=appointment, actor=actor)
        return appointment

    def reschedule(self, appointment: Appointment, *, actor, **changes) -> Appointment:
        """Apply ``changes``; a timing change (or leaving ``cancelled``) is
        re-validated with the appointment itself excluded."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise TypeError(f"unknown appointment fields: {sorted(unknown)}")
        if "duration_minutes" in changes:
            if changes["duration_minutes"] is None:
                changes.pop("duration_minutes")
            else:
                changes["duration_minutes"] = checked_duration(changes["duration_minutes"])
        if "status" in changes and not changes["status"]:
            changes.pop("status")

        target = {f: changes.get(f, getattr(appointment, f)) for f in TIMING_FIELDS + ("status",)}
        previous_status = appointment.status
        changed_fields = tuple(f for f, value in changes.items() if getattr(appointment, f) != value)
        needs_check = target["status"] != CANCELLED and (
            any(f in changes for f in TIMING_FIELDS) or previous_status == CANCELLED
        )

        try:
            if needs_check:
                self._lock_parties(target["user_id"], target["therapist_id"])
                report = self.detector.check(
                    target["user_id"], target["therapist_id"], target["appointment_at"],
                    target["duration_minutes"], exclude_id=appointment.id,
                )
                if report is not None:
                    raise SchedulingConflict(report)
            for field, value in changes.items():
                setattr(appointment, field, value)
            self.session.commit()
        except SchedulingConflict as e:
            self.session.rollback()
            current_app.logger.info("[BOOKING] reschedule of %s rejected: %s conflict", appointment.id, e.party)
            raise
        except IntegrityError as e:
            self.session.rollback()
            conflict = self._reclassify(
                e, target["user_id"], target["therapist_id"], target["appointment_at"],
                target["duration_minutes"], exclude_id=appointment.id,
            )
            if conflict is None:
                raise
            raise conflict from e

        emit(appointment_updated, sender="scheduling", appointment=appointment, actor=actor,
             previous_status=previous_status, changed_fields=changed_fields)
        return appointment
