import json
import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest import mock

import requests

from ai_chat import SYSTEM_PROMPT, build_messages, should_recommend_therapist
from extensions import db
from models import AIMessage, Conversation, ConversationParticipant
from testing_base import PeerlyTestCase


def provider_response(status=200, body=None, text=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.text = text if text is not None else json.dumps(body or {})
    resp.json.return_value = body
    return resp


def completion(content="I'm here with you.", finish_reason="stop"):
    return provider_response(body={
        "model": "sonar",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 42, "completion_tokens": 7, "total_tokens": 49},
    })


class ContextHelperTests(unittest.TestCase):
    def test_keywords_in_prompt_or_history(self):
        self.assertTrue(should_recommend_therapist("I feel so overwhelmed lately"))
        self.assertFalse(should_recommend_therapist("What is a good evening routine?"))
        history = [SimpleNamespace(prompt="Can you find me a Therapist?", response="Sure.")]
        self.assertTrue(should_recommend_therapist("thanks", history))

    def test_messages_are_system_history_then_prompt(self):
        history = [SimpleNamespace(prompt="hi", response="hello")]
        messages = build_messages("sys", history, "how are you?")
        self.assertEqual([m["role"] for m in messages], ["system", "user", "assistant", "user"])
        self.assertEqual(messages[-1]["content"], "how are you?")


class AIMessageApiTests(PeerlyTestCase):
    def setUp(self):
        super().setUp()
        self.user_id, self.token = self.make_user("Alice")
        self.other_id, _ = self.make_user("Bob")
        self.therapist_id = self.make_therapist("Dr. Rivera", specialty="Anxiety")

    def ask(self, prompt, **extra):
        body = {"prompt": prompt}
        body.update(extra)
        return self.client.post("/api/v1/ai-messages", json=body, headers=self.auth(self.token))

    def make_conversation(self):
        with self.app.app_context():
            conversation = Conversation()
            conversation.participants = [
                ConversationParticipant(user_id=self.user_id),
                ConversationParticipant(user_id=self.other_id),
            ]
            db.session.add(conversation)
            db.session.commit()
            return conversation.id

    def test_exchange_is_stored_with_metadata(self):
        with mock.patch.object(requests.Session, "post", return_value=completion()) as post:
            resp = self.ask("Today was a long day")
        self.assertEqual(resp.status_code, 201)
        body = resp.get_json()
        self.assertEqual(body["message"]["response"], "I'm here with you.")
        self.assertEqual(body["message"]["meta"]["usage"]["total_tokens"], 49)
        self.assertFalse(body["message"]["meta"]["therapist_context_included"])
        self.assertEqual(body["recommended_therapists"], [])

        url = post.call_args.args[0]
        kwargs = post.call_args.kwargs
        self.assertEqual(url, "https://ai.example.test/chat/completions")
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer test-key")
        payload = kwargs["json"]
        self.assertEqual(payload["model"], "sonar")
        self.assertEqual(payload["max_tokens"], 800)
        self.assertFalse(payload["stream"])
        self.assertEqual(payload["messages"][0], {"role": "system", "content": SYSTEM_PROMPT})
        self.assertEqual(payload["messages"][-1], {"role": "user", "content": "Today was a long day"})

    def test_therapist_directory_added_on_keywords(self):
        with mock.patch.object(requests.Session, "post", return_value=completion()) as post:
            resp = self.ask("I think I need to talk to a therapist")
        body = resp.get_json()
        self.assertEqual([t["id"] for t in body["recommended_therapists"]], [self.therapist_id])
        self.assertTrue(body["message"]["meta"]["therapist_context_included"])
        system = post.call_args.kwargs["json"]["messages"][0]["content"]
        self.assertIn("AVAILABLE THERAPISTS", system)
        self.assertIn("Dr. Rivera", system)

    def test_context_uses_the_ten_most_recent_exchanges(self):
        conversation_id = self.make_conversation()
        start = datetime(2025, 1, 10, 9, 0)
        with self.app.app_context():
            for i in range(12):
                db.session.add(AIMessage(user_id=self.user_id, conversation_id=conversation_id,
                                         prompt=f"prompt {i}", response=f"reply {i}", meta={},
                                         created_at=start + timedelta(minutes=i)))
            db.session.commit()

        with mock.patch.object(requests.Session, "post", return_value=completion()) as post:
            resp = self.ask("and now?", conversation_id=conversation_id)
        self.assertEqual(resp.status_code, 201)
        messages = post.call_args.kwargs["json"]["messages"]
        self.assertEqual(len(messages), 1 + 20 + 1)
        self.assertEqual(messages[1]["content"], "prompt 2")
        self.assertEqual(messages[2]["content"], "reply 2")
        self.assertEqual(messages[-2]["content"], "reply 11")

    def test_busy_provider_is_retryable(self):
        with mock.patch.object(requests.Session, "post",
                               return_value=provider_response(503, text="Service Unavailable")):
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 503)
        self.assertTrue(resp.get_json()["retryable"])
        with self.app.app_context():
            self.assertEqual(AIMessage.query.count(), 0)

    def test_overloaded_body_is_busy(self):
        with mock.patch.object(requests.Session, "post",
                               return_value=provider_response(500, text='{"error": "Model overloaded"}')):
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 503)
        self.assertTrue(resp.get_json()["retryable"])

    def test_other_provider_errors_are_terminal(self):
        with mock.patch.object(requests.Session, "post",
                               return_value=provider_response(400, text='{"error": "secret internal detail"}')):
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 502)
        body = resp.get_json()
        self.assertFalse(body["retryable"])
        self.assertNotIn("secret internal detail", json.dumps(body))

    def test_network_failure_is_terminal(self):
        with mock.patch.object(requests.Session, "post", side_effect=requests.ConnectionError("refused")):
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 502)

    def test_invalid_json_is_terminal(self):
        bad = provider_response(200, text="<html>")
        bad.json.side_effect = ValueError("not json")
        with mock.patch.object(requests.Session, "post", return_value=bad):
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 502)

    def test_missing_api_key(self):
        self.app.config["PERPLEXITY_API_KEY"] = None
        with mock.patch.object(requests.Session, "post") as post:
            resp = self.ask("hello")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.get_json()["message"], "AI service is not configured. Please contact support.")
        post.assert_not_called()

    def test_prompt_is_required(self):
        resp = self.client.post("/api/v1/ai-messages", json={}, headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 422)
        self.assertIn("prompt", resp.get_json()["errors"])

    def test_exchanges_are_private(self):
        _, bob_token = self.make_user("Bobby")
        with mock.patch.object(requests.Session, "post", return_value=completion()):
            ai_id = self.ask("hello").get_json()["message"]["id"]
        resp = self.client.get(f"/api/v1/ai-messages/{ai_id}", headers=self.auth(bob_token))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.delete(f"/api/v1/ai-messages/{ai_id}", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 200)


    def test_conversation_context_requires_participation(self):
        _, outsider_token = self.make_user("Carol")
        conversation_id = self.make_conversation()
        with mock.patch.object(requests.Session, "post", return_value=completion()) as post:
            resp = self.client.post("/api/v1/ai-messages", json={"prompt": "what did they say?",
                                                                   "conversation_id": conversation_id},
                                    headers=self.auth(outsider_token))
        self.assertEqual(resp.status_code, 403)
        post.assert_not_called()
        with self.app.app_context():
            self.assertEqual(AIMessage.query.count(), 0)

if __name__ == "__main__":
    unittest.main()
