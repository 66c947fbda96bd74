import unittest
from datetime import datetime

from errors import ValidationError
from extensions import db
from models import Appointment, Notification, User
from scheduling import (
    AppointmentRepository,
    BookingService,
    ConflictDetector,
    SchedulingConflict,
    intervals_overlap,
    normalize_duration,
)
from testing_base import PeerlyTestCase, at


class IntervalTests(unittest.TestCase):
    def test_adjacent_intervals_do_not_overlap(self):
        ten, eleven, noon = datetime(2025, 1, 10, 10), datetime(2025, 1, 10, 11), datetime(2025, 1, 10, 12)
        self.assertFalse(intervals_overlap(ten, eleven, eleven, noon))
        self.assertFalse(intervals_overlap(eleven, noon, ten, eleven))

    def test_partial_contained_and_identical_overlap(self):
        a = (datetime(2025, 1, 10, 10), datetime(2025, 1, 10, 11))
        self.assertTrue(intervals_overlap(*a, datetime(2025, 1, 10, 10, 30), datetime(2025, 1, 10, 11, 30)))
        self.assertTrue(intervals_overlap(*a, datetime(2025, 1, 10, 10, 15), datetime(2025, 1, 10, 10, 45)))
        self.assertTrue(intervals_overlap(*a, *a))

    def test_missing_or_zero_duration_is_sixty_minutes(self):
        self.assertEqual(normalize_duration(None), 60)
        self.assertEqual(normalize_duration(0), 60)
        self.assertEqual(normalize_duration(30), 30)


class BookingServiceTests(PeerlyTestCase):
    def setUp(self):
        super().setUp()
        self.p7, _ = self.make_user("Patient Seven", "p7@example.com")
        self.p9, _ = self.make_user("Patient Nine", "p9@example.com")
        self.t3 = self.make_therapist("Dr. Three", "three@clinic.example")
        self.t4 = self.make_therapist("Dr. Four", "four@clinic.example")

    def book(self, user_id, therapist_id, start, duration=None, **kwargs):
        service = kwargs.pop("service", None) or BookingService(db.session)
        return service.book(actor=None, user_id=user_id, therapist_id=therapist_id,
                            appointment_at=start, duration_minutes=duration, **kwargs)

    def test_overlapping_therapist_slot_is_rejected(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            with self.assertRaises(SchedulingConflict) as ctx:
                self.book(self.p9, self.t3, datetime(2025, 1, 10, 10, 30), 30)
            self.assertEqual(ctx.exception.party, "therapist")
            self.assertEqual(ctx.exception.status_code, 409)
            self.assertEqual(Appointment.query.count(), 1)

    def test_back_to_back_sessions_are_allowed(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            second = self.book(self.p9, self.t3, datetime(2025, 1, 10, 11, 0), 30)
            self.assertEqual(second.duration_minutes, 30)
            self.assertEqual(Appointment.query.count(), 2)

    def test_patient_double_booking_names_the_patient(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            with self.assertRaises(SchedulingConflict) as ctx:
                self.book(self.p7, self.t4, datetime(2025, 1, 10, 10, 15), 30)
            self.assertEqual(ctx.exception.party, "patient")
            self.assertIn("patient already has an appointment", ctx.exception.message)

    def test_therapist_is_reported_before_patient(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            with self.assertRaises(SchedulingConflict) as ctx:
                self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 30), 30)
            self.assertEqual(ctx.exception.party, "therapist")

    def test_missing_duration_blocks_a_full_hour(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), None)
            self.assertEqual(first.duration_minutes, 60)
            with self.assertRaises(SchedulingConflict):
                self.book(self.p9, self.t3, datetime(2025, 1, 10, 10, 59), 15)
            self.book(self.p9, self.t3, datetime(2025, 1, 10, 11, 0), 15)

    def test_long_session_found_from_far_before(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 8, 0), 240)
            with self.assertRaises(SchedulingConflict):
                self.book(self.p9, self.t3, datetime(2025, 1, 10, 11, 45), 15)

    def test_sessions_outside_the_bookable_range_are_refused(self):
        with self.app.app_context():
            with self.assertRaises(ValidationError) as ctx:
                self.book(self.p7, self.t3, datetime(2025, 1, 10, 8, 0), 300)
            self.assertIn("duration_minutes", ctx.exception.errors)
            with self.assertRaises(ValidationError):
                self.book(self.p7, self.t3, datetime(2025, 1, 10, 8, 0), 241)
            with self.assertRaises(ValidationError):
                self.book(self.p7, self.t3, datetime(2025, 1, 10, 8, 0), 10)
            self.assertEqual(Appointment.query.count(), 0)

            self.book(self.p9, self.t3, datetime(2025, 1, 10, 12, 30), 15)

    def test_rescheduling_beyond_the_longest_session_is_refused(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 8, 0), 240)
            with self.assertRaises(ValidationError):
                BookingService(db.session).reschedule(first, actor=None, duration_minutes=241)
            self.assertEqual(db.session.get(Appointment, first.id).duration_minutes, 240)

    def test_cancelled_appointment_frees_the_slot(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            BookingService(db.session).reschedule(first, actor=None, status="cancelled")
            replacement = self.book(self.p9, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            self.assertEqual(replacement.status, "pending")

    def test_editing_an_appointment_does_not_conflict_with_itself(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            BookingService(db.session).reschedule(
                first, actor=None, appointment_at=datetime(2025, 1, 10, 10, 0), duration_minutes=90,
            )
            self.assertEqual(first.duration_minutes, 90)
            BookingService(db.session).reschedule(first, actor=None, appointment_at=datetime(2025, 1, 10, 10, 30))
            self.assertEqual(first.appointment_at, datetime(2025, 1, 10, 10, 30))

    def test_moving_into_an_occupied_slot_is_rejected_and_nothing_changes(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            other = self.book(self.p9, self.t3, datetime(2025, 1, 10, 12, 0), 60)
            with self.assertRaises(SchedulingConflict):
                BookingService(db.session).reschedule(other, actor=None, appointment_at=datetime(2025, 1, 10, 10, 30))
            refreshed = db.session.get(Appointment, other.id)
            self.assertEqual(refreshed.appointment_at, datetime(2025, 1, 10, 12, 0))

    def test_reopening_a_cancelled_appointment_is_checked_again(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            BookingService(db.session).reschedule(first, actor=None, status="cancelled")
            self.book(self.p9, self.t3, datetime(2025, 1, 10, 10, 30), 30)
            with self.assertRaises(SchedulingConflict):
                BookingService(db.session).reschedule(first, actor=None, status="pending")
            self.assertEqual(db.session.get(Appointment, first.id).status, "cancelled")

    def test_notes_only_change_skips_the_check(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            BookingService(db.session).reschedule(first, actor=None, notes="Bring the journal")
            self.assertEqual(first.notes, "Bring the journal")

    def test_unknown_fields_are_refused(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            with self.assertRaises(TypeError):
                BookingService(db.session).reschedule(first, actor=None, room="B")

    def test_morning_scenario(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, datetime(2025, 1, 10, 10, 0), 60)
            with self.assertRaises(SchedulingConflict):
                self.book(self.p9, self.t3, datetime(2025, 1, 10, 10, 30), 30)
            self.book(self.p9, self.t3, datetime(2025, 1, 10, 11, 0), 30)
            starts = [a.appointment_at.time().isoformat() for a in
                      Appointment.query.order_by(Appointment.appointment_at).all()]
            self.assertEqual(starts, ["10:00:00", "11:00:00"])

    def test_booking_notifies_the_patient(self):
        with self.app.app_context():
            self.book(self.p7, self.t3, at(10), 45)
            notification = Notification.query.filter_by(user_id=self.p7).one()
            self.assertEqual(notification.type, "appointment_booked")
            self.assertEqual(notification.title, "Appointment Confirmed")
            self.assertIn("Dr. Three", notification.message)
            self.assertIn("45 minutes", notification.message)

    def test_moving_an_appointment_notifies_the_patient(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, at(10), 60)
            BookingService(db.session).reschedule(first, actor=None, appointment_at=at(14))
            BookingService(db.session).reschedule(first, actor=None, notes="Ground floor")
            notifications = Notification.query.filter_by(user_id=self.p7).order_by(Notification.id).all()
            self.assertEqual([n.type for n in notifications], ["appointment_booked", "appointment_rescheduled"])
            self.assertEqual(notifications[-1].title, "Appointment updated")
            self.assertIn("now scheduled for", notifications[-1].message)

    def test_status_change_notifies_the_patient(self):
        with self.app.app_context():
            first = self.book(self.p7, self.t3, at(10), 60)
            BookingService(db.session).reschedule(first, actor=None, status="confirmed")
            types = [n.type for n in Notification.query.filter_by(user_id=self.p7).order_by(Notification.id)]
            self.assertEqual(types, ["appointment_booked", "appointment_confirmed"])


class StaleReadDetector(ConflictDetector):
    """Misses the clash on its first call, as a read taken before another commit would."""

    def __init__(self, repository):
        super().__init__(repository)
        self.calls = 0

    def check(self, *args, **kwargs):
        self.calls += 1
        if self.calls == 1:
            return None
        return super().check(*args, **kwargs)


class UniqueIndexBackstopTests(PeerlyTestCase):
    def test_unique_index_violation_is_reported_as_conflict(self):
        p1, _ = self.make_user("First")
        p2, _ = self.make_user("Second")
        therapist = self.make_therapist()
        start = datetime(2025, 1, 10, 10, 0)
        with self.app.app_context():
            BookingService(db.session).book(actor=None, user_id=p1, therapist_id=therapist,
                                            appointment_at=start, duration_minutes=60)
            detector = StaleReadDetector(AppointmentRepository(db.session))
            with self.assertRaises(SchedulingConflict) as ctx:
                BookingService(db.session, detector=detector).book(
                    actor=None, user_id=p2, therapist_id=therapist, appointment_at=start, duration_minutes=60,
                )
            self.assertEqual(ctx.exception.party, "therapist")
            self.assertEqual(detector.calls, 2)
            self.assertEqual(Appointment.query.count(), 1)
            self.assertIsNotNone(db.session.get(User, p2))


if __name__ == "__main__":
    unittest.main()
