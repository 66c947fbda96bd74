# ai_chat.py - AI companion: chat-completion client, rolling context, therapist hints
from typing import NamedTuple

import requests
from flask import current_app

from errors import ApiError
from extensions import db
from models import AIMessage, Therapist

DEFAULT_API_URL = "https://api.perplexity.ai/chat/completions"
DEFAULT_MODEL = "sonar"
DEFAULT_TIMEOUT = 30
HISTORY_WINDOW = 10

FALLBACK_REPLY = "I apologize, but I was unable to generate a response. Please try again."

SYSTEM_PROMPT = (
    "You are Peerly, a compassionate AI companion in a mental health support app. "
    "Respond only to emotional and mental health needs, with warmth and without judgment. "
    "Never diagnose or prescribe. Recommend professional help when someone may be in crisis. "
    "When therapist information is provided, you may recommend a therapist by name, "
    "specialty and contact details."
)

THERAPIST_KEYWORDS = (
    "suicide", "kill myself", "end it all", "no reason to live",
    "therapist", "professional help", "counselor", "psychiatrist",
    "severe", "crisis", "emergency", "can't cope", "overwhelmed",
    "self-harm", "hurt myself", "depressed", "anxiety attack",
)


# =========================
#   ERRORS
# =========================
class AIServiceError(ApiError):
    """Terminal provider failure; the raw provider body is logged, never returned."""

    status_code = 502
    message = "Unable to get a response from the AI service. Please try again."
    retryable = False

    def to_dict(self):
        return {"message": self.message, "error": self.message, "retryable": self.retryable}


class AIServiceBusy(AIServiceError):
    status_code = 503
    message = "The AI service is currently experiencing high demand. Please try again in a moment."
    retryable = True


class AIServiceNotConfigured(AIServiceError):
    status_code = 503
    message = "AI service is not configured. Please contact support."


# =========================
#   PROVIDER CLIENT
# =========================
class ChatCompletion(NamedTuple):
    content: str
    finish_reason: str
    usage: dict
    model: str


class ChatCompletionClient:
    def __init__(self, api_key, url=DEFAULT_API_URL, model=DEFAULT_MODEL, timeout=DEFAULT_TIMEOUT,
                 max_tokens=800, temperature=0.7, top_p=0.9, http=None):
        self.api_key = api_key
        self.url = url
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.http = http or requests.Session()

    @classmethod
    def from_config(cls, config):
        api_key = config.get("PERPLEXITY_API_KEY")
        if not api_key:
            raise AIServiceNotConfigured()
        return cls(
            api_key,
            url=config.get("AI_CHAT_URL") or DEFAULT_API_URL,
            model=config.get("AI_CHAT_MODEL") or DEFAULT_MODEL,
            timeout=config.get("AI_CHAT_TIMEOUT") or DEFAULT_TIMEOUT,
        )

    def complete(self, messages) -> ChatCompletion:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "stream": False,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.http.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            current_app.logger.error("[AI] provider request failed: %s", e)
            raise AIServiceError() from e

        if resp.status_code >= 400:
            body = resp.text or ""
            current_app.logger.error("[AI] provider error status=%s body=%s", resp.status_code, body[:2000])
            if resp.status_code == 503 or "overloaded" in body.lower():
                raise AIServiceBusy()
            raise AIServiceError()

        try:
            data = resp.json()
        except ValueError as e:
            current_app.logger.error("[AI] provider returned invalid JSON: %s", (resp.text or "")[:2000])
            raise AIServiceError() from e

        choice = (data.get("choices") or [{}])[0]
        content = (choice.get("message") or {}).get("content") or FALLBACK_REPLY
        return ChatCompletion(
            content=content,
            finish_reason=choice.get("finish_reason"),
            usage=data.get("usage") or {},
            model=data.get("model") or self.model,
        )


# =========================
#   CONTEXT
# =========================
def history_window(user_id, conversation_id, limit=HISTORY_WINDOW):
    """The user's most recent ``limit`` exchanges in the conversation, oldest first."""
    if not conversation_id:
        return []
    rows = (
        AIMessage.query
        .filter(AIMessage.user_id == user_id, AIMessage.conversation_id == conversation_id)
        .order_by(AIMessage.created_at.desc(), AIMessage.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def should_recommend_therapist(prompt, history=()) -> bool:
    text = " ".join([prompt or ""] + [h.prompt or "" for h in history]).lower()
    return any(keyword in text for keyword in THERAPIST_KEYWORDS)


def therapist_directory_context(therapists) -> str:
    if not therapists:
        return ""
    lines = [
        "",
        "",
        "AVAILABLE THERAPISTS:",
        "You can recommend the following licensed therapists when appropriate:",
        "",
    ]
    for t in therapists:
        lines.append(f"- {t.name}")
        lines.append(f"  Specialty: {t.specialty or '-'}")
        if t.bio:
            lines.append(f"  About: {t.bio}")
        lines.append(f"  Contact: {t.phone_number} | {t.email}")
        lines.append("")
    return "\n".join(lines)


def build_messages(system_prompt, history, prompt):
    messages = [{"role": "system", "content": system_prompt}]
    for exchange in history:
        messages.append({"role": "user", "content": exchange.prompt})
        messages.append({"role": "assistant", "content": exchange.response})
    messages.append({"role": "user", "content": prompt})
    return messages


# =========================
#   SERVICE
# =========================
def send_ai_message(user, prompt, conversation_id=None, client=None):
    """Ask the provider and store the exchange.

    Returns ``(AIMessage, recommended_therapists)``. Nothing is stored when the
    provider fails.
    """
    client = client or ChatCompletionClient.from_config(current_app.config)

    history = history_window(user.id, conversation_id)
    include_therapists = should_recommend_therapist(prompt, history)
    therapists = Therapist.query.order_by(Therapist.name.asc()).all() if include_therapists else []

    system_prompt = SYSTEM_PROMPT + therapist_directory_context(therapists)
    completion = client.complete(build_messages(system_prompt, history, prompt))

    ai_message = AIMessage(
        user_id=user.id,
        conversation_id=conversation_id,
        prompt=prompt,
        response=completion.content,
        meta={
            "model": completion.model,
            "finish_reason": completion.finish_reason,
            "usage": completion.usage,
            "therapist_context_included": include_therapists,
        },
    )
    db.session.add(ai_message)
    db.session.commit()
    current_app.logger.info("[AI] user %s exchange stored (conversation=%s, therapists=%s)",
                            user.id, conversation_id, include_therapists)
    return ai_message, therapists
