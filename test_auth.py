import unittest

from auth import _hash_token
from extensions import db
from models import ApiToken, Appointment, Profile, User
from scheduling import BookingService
from testing_base import PeerlyTestCase, at


class AuthTests(PeerlyTestCase):
    def register(self, **overrides):
        body = {
            "name": "Nadia",
            "email": "Nadia@Example.com",
            "password": "correct-horse",
            "password_confirmation": "correct-horse",
        }
        body.update(overrides)
        return self.client.post("/api/register", json=body)

    def test_register_creates_user_profile_and_token(self):
        resp = self.register()
        self.assertEqual(resp.status_code, 201)
        body = resp.get_json()
        self.assertEqual(body["user"]["email"], "nadia@example.com")
        self.assertTrue(body["token"].startswith(f"{body['user']['id']}|"))

        with self.app.app_context():
            user = User.query.filter_by(email="nadia@example.com").one()
            self.assertNotEqual(user.password_hash, "correct-horse")
            profile = Profile.query.filter_by(user_id=user.id).one()
            self.assertEqual(profile.prefix, f"user_{user.id}")
            self.assertIn("dicebear", profile.avatar)
            self.assertEqual(ApiToken.query.filter_by(token_hash=_hash_token(body["token"])).count(), 1)

        me = self.client.get("/api/user", headers=self.auth(body["token"])).get_json()
        self.assertEqual(me["profile"]["prefix"], f"user_{body['user']['id']}")

    def test_register_validation(self):
        resp = self.register(password_confirmation="something-else")
        self.assertEqual(resp.status_code, 422)
        self.assertIn("password", resp.get_json()["errors"])

        resp = self.register(password="short", password_confirmation="short")
        self.assertIn("password", resp.get_json()["errors"])

        self.assertEqual(self.register().status_code, 201)
        resp = self.register(email="nadia@example.com")
        self.assertEqual(resp.status_code, 422)
        self.assertIn("email", resp.get_json()["errors"])

    def test_login_with_bad_credentials(self):
        self.make_user("Alice")
        resp = self.client.post("/api/login", json={"email": "alice@example.com", "password": "nope"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.get_json()["errors"],
                         {"email": ["The provided credentials do not match our records."]})

    def test_logout_revokes_tokens(self):
        _, token = self.make_user("Alice")
        self.assertEqual(self.client.get("/api/user", headers=self.auth(token)).status_code, 200)
        self.assertEqual(self.client.post("/api/logout", headers=self.auth(token)).status_code, 200)
        self.assertEqual(self.client.get("/api/user", headers=self.auth(token)).status_code, 401)

    def test_unknown_token_is_rejected(self):
        resp = self.client.get("/api/v1/therapists", headers=self.auth("1|not-a-real-token"))
        self.assertEqual(resp.status_code, 401)

    def test_token_use_is_recorded(self):
        user_id, token = self.make_user("Alice")
        self.client.get("/api/user", headers=self.auth(token))
        with self.app.app_context():
            row = ApiToken.query.filter_by(user_id=user_id).one()
            self.assertIsNotNone(row.last_used_at)

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.get_json()["status"], "ok")


class TherapistDirectoryTests(PeerlyTestCase):
    def test_only_admins_manage_therapists(self):
        _, user_token = self.make_user("Alice")
        _, admin_token = self.make_user("Admin", admin=True)
        body = {"name": "Dr. Chen", "phone_number": "+1 555 0199", "email": "chen@clinic.example",
                "specialty": "Trauma"}

        resp = self.client.post("/api/v1/therapists", json=body, headers=self.auth(user_token))
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json(), {"message": "This action is unauthorized."})

        resp = self.client.post("/api/v1/therapists", json=body, headers=self.auth(admin_token))
        self.assertEqual(resp.status_code, 201)
        resp = self.client.post("/api/v1/therapists", json=body, headers=self.auth(admin_token))
        self.assertEqual(resp.status_code, 422)
        self.assertIn("email", resp.get_json()["errors"])

        listing = self.client.get("/api/v1/therapists?specialty=trau", headers=self.auth(user_token)).get_json()
        self.assertEqual([t["name"] for t in listing["data"]], ["Dr. Chen"])

    def test_deleting_a_therapist_removes_their_appointments(self):
        user_id, _ = self.make_user("Alice")
        _, admin_token = self.make_user("Admin", admin=True)
        therapist_id = self.make_therapist()
        with self.app.app_context():
            BookingService(db.session).book(actor=None, user_id=user_id, therapist_id=therapist_id,
                                            appointment_at=at(9))
        resp = self.client.delete(f"/api/v1/therapists/{therapist_id}", headers=self.auth(admin_token))
        self.assertEqual(resp.status_code, 200)
        with self.app.app_context():
            self.assertEqual(Appointment.query.count(), 0)


if __name__ == "__main__":
    unittest.main()
