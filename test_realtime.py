import unittest

from extensions import db, socketio
from models import User
from realtime import channel_authorized
from testing_base import PeerlyTestCase


def events_named(client, name):
    return [e["args"][0] for e in client.get_received() if e["name"] == name]


class ChannelAuthorizationTests(PeerlyTestCase):
    def setUp(self):
        super().setUp()
        self.alice, self.alice_token = self.make_user("Alice")
        self.bob, self.bob_token = self.make_user("Bob")
        self.carol, self.carol_token = self.make_user("Carol")
        self.conversation_id = self.client.post(
            "/api/v1/conversations", json={"user_ids": [self.alice, self.bob]}, headers=self.auth(self.alice_token),
        ).get_json()["id"]

    def test_channel_rules(self):
        with self.app.app_context():
            alice = db.session.get(User, self.alice)
            carol = db.session.get(User, self.carol)
            self.assertTrue(channel_authorized(alice, "user-status"))
            self.assertTrue(channel_authorized(alice, "online-users"))
            self.assertTrue(channel_authorized(alice, f"user.{self.alice}"))
            self.assertFalse(channel_authorized(alice, f"user.{self.bob}"))
            self.assertTrue(channel_authorized(alice, f"conversation.{self.conversation_id}"))
            self.assertTrue(channel_authorized(alice, f"conversation-presence.{self.conversation_id}"))
            self.assertFalse(channel_authorized(carol, f"conversation.{self.conversation_id}"))
            self.assertFalse(channel_authorized(alice, "conversation.9999"))
            self.assertFalse(channel_authorized(alice, "admin-room"))
            self.assertFalse(channel_authorized(None, "user-status"))

    def test_socket_without_token_is_refused(self):
        client = socketio.test_client(self.app, auth={"token": "nope"})
        self.assertFalse(client.is_connected())

    def test_subscription_to_someone_elses_channel_is_denied(self):
        client = socketio.test_client(self.app, auth={"token": self.carol_token})
        self.assertTrue(client.is_connected())
        client.emit("subscribe", {"channel": f"conversation.{self.conversation_id}"})
        errors = events_named(client, "subscription_error")
        self.assertEqual(errors[0]["channel"], f"conversation.{self.conversation_id}")
        client.disconnect()

    def test_participants_receive_new_messages(self):
        client = socketio.test_client(self.app, auth={"token": self.bob_token})
        client.emit("subscribe", {"channel": f"conversation.{self.conversation_id}"})
        self.assertEqual(len(events_named(client, "subscription_succeeded")), 1)

        self.client.post("/api/v1/messages", json={"conversation_id": self.conversation_id, "message": "hey"},
                         headers=self.auth(self.alice_token))
        pushed = events_named(client, "message.sent")
        self.assertEqual([m["message"] for m in pushed], ["hey"])
        client.disconnect()

    def test_notifications_reach_the_owner_channel(self):
        client = socketio.test_client(self.app, auth={"token": self.bob_token})
        client.emit("subscribe", {"channel": f"user.{self.bob}"})
        client.get_received()

        self.client.post("/api/v1/messages", json={"conversation_id": self.conversation_id, "message": "hey"},
                         headers=self.auth(self.alice_token))
        pushed = events_named(client, "notification.created")
        self.assertEqual([n["type"] for n in pushed], ["new_message"])
        client.disconnect()

    def test_status_changes_are_broadcast(self):
        client = socketio.test_client(self.app, auth={"token": self.bob_token})
        client.emit("subscribe", {"channel": "user-status"})
        client.get_received()

        self.client.post("/api/v1/user-status", json={"status": "away"}, headers=self.auth(self.alice_token))
        pushed = events_named(client, "user.status.changed")
        self.assertEqual([(p["user_id"], p["status"]) for p in pushed], [(self.alice, "away")])
        client.disconnect()


if __name__ == "__main__":
    unittest.main()
