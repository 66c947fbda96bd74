# models.py - Peerly data model (users, presence mirror, scheduling, messaging)
from datetime import datetime

from flask_login import UserMixin

from extensions import db


def _iso(value):
    return value.isoformat() if value else None


# ======================
# Users / auth
# ======================
class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    profile = db.relationship(
        "Profile",
        back_populates="user",
        uselist=False,
        passive_deletes=True,
    )

    __table_args__ = (
        db.Index("ix_users_is_admin", "is_admin"),
        db.Index("ix_users_created_at", "created_at"),
    )

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "is_admin": bool(self.is_admin),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<User id={self.id} {self.email} admin={self.is_admin}>"


class ApiToken(db.Model):
    """Personal bearer token; only the sha256 of the plain value is stored."""

    __tablename__ = "api_tokens"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(120), nullable=False, default="auth_token")
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_used_at = db.Column(db.DateTime)

    user = db.relationship(
        "User",
        backref=db.backref("tokens", passive_deletes=True),
        lazy="joined",
    )

    __table_args__ = (db.Index("ix_api_tokens_user", "user_id"),)

    def __repr__(self):
        return f"<ApiToken id={self.id} user={self.user_id} name={self.name}>"


# ======================
# Profiles (presence mirror)
# ======================
class Profile(db.Model):
    __tablename__ = "profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    prefix = db.Column(db.String(120), unique=True, nullable=False)
    about = db.Column(db.Text)
    # Denormalized mirror of the presence cache; the cache is authoritative.
    online_status = db.Column(db.Boolean, default=False, nullable=False)
    avatar = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="profile", lazy="joined")

    __table_args__ = (db.Index("ix_profiles_online_status", "online_status"),)

    def to_dict(self, include_user=False):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "prefix": self.prefix,
            "about": self.about,
            "online_status": bool(self.online_status),
            "avatar": self.avatar,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_user and self.user is not None:
            data["user"] = self.user.to_dict()
        return data

    def __repr__(self):
        return f"<Profile id={self.id} user={self.user_id} online={self.online_status}>"


# ======================
# Scheduling
# ======================
class Therapist(db.Model):
    __tablename__ = "therapists"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone_number = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    specialty = db.Column(db.String(255))
    bio = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (db.Index("ix_therapists_specialty", "specialty"),)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "phone_number": self.phone_number,
            "email": self.email,
            "specialty": self.specialty,
            "bio": self.bio,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Therapist id={self.id} {self.name} specialty={self.specialty or '-'}>"


APPOINTMENT_STATUSES = ("pending", "confirmed", "cancelled", "completed")
APPOINTMENT_CREATORS = ("user", "admin", "system")


class Appointment(db.Model):
    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    therapist_id = db.Column(
        db.Integer, db.ForeignKey("therapists.id", ondelete="CASCADE"), nullable=False
    )

    appointment_at = db.Column(db.DateTime, nullable=False)
    duration_minutes = db.Column(db.Integer, default=60)
    status = db.Column(db.String(20), default="pending", nullable=False)
    notes = db.Column(db.Text)
    created_by = db.Column(db.String(20), default="user", nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship(
        "User",
        backref=db.backref("appointments", passive_deletes=True),
        lazy="joined",
    )
    therapist = db.relationship(
        "Therapist",
        backref=db.backref("appointments", passive_deletes=True),
        lazy="joined",
    )

    __table_args__ = (
        db.Index("ix_appointments_user_at", "user_id", "appointment_at"),
        db.Index("ix_appointments_therapist_at", "therapist_id", "appointment_at"),
        db.Index("ix_appointments_status", "status"),
        # Last line of defence against two concurrent bookings of the same start.
        db.Index(
            "uq_appointments_therapist_start_active",
            "therapist_id", "appointment_at",
            unique=True,
            postgresql_where=db.text("status <> 'cancelled'"),
            sqlite_where=db.text("status <> 'cancelled'"),
        ),
        db.Index(
            "uq_appointments_user_start_active",
            "user_id", "appointment_at",
            unique=True,
            postgresql_where=db.text("status <> 'cancelled'"),
            sqlite_where=db.text("status <> 'cancelled'"),
        ),
    )

    def to_dict(self, include_relations=True):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "therapist_id": self.therapist_id,
            "appointment_at": _iso(self.appointment_at),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_relations:
            data["user"] = self.user.to_dict() if self.user else None
            data["therapist"] = self.therapist.to_dict() if self.therapist else None
        return data

    def __repr__(self):
        return (
            f"<Appt id={self.id} therapist={self.therapist_id} user={self.user_id} "
            f"at={self.appointment_at} dur={self.duration_minutes} status={self.status}>"
        )


# ======================
# Direct messaging
# ======================
class Conversation(db.Model):
    __tablename__ = "conversations"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    participants = db.relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    messages = db.relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )

    @property
    def user_ids(self):
        return sorted(p.user_id for p in self.participants)

    def has_participant(self, user_id):
        return any(p.user_id == user_id for p in self.participants)

    def to_dict(self, include_messages=False):
        data = {
            "id": self.id,
            "users": [p.user.to_dict() for p in self.participants if p.user is not None],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_messages:
            data["messages"] = [m.to_dict() for m in self.messages]
        return data

    def __repr__(self):
        return f"<Conversation id={self.id} users={self.user_ids}>"


class ConversationParticipant(db.Model):
    __tablename__ = "conversation_user"

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(
        db.Integer, db.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    last_read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    conversation = db.relationship("Conversation", back_populates="participants")
    user = db.relationship("User", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("conversation_id", "user_id", name="uq_conversation_user"),
    )


class Message(db.Model):
    __tablename__ = "messages"

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(
        db.Integer, db.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    conversation = db.relationship("Conversation", back_populates="messages")
    user = db.relationship("User", lazy="joined")

    __table_args__ = (
        db.Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "message": self.message,
            "user": self.user.to_dict() if self.user else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ======================
# Groups
# ======================
class Group(db.Model):
    __tablename__ = "groups"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    bio = db.Column(db.Text)
    icon = db.Column(db.String(500))
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = db.relationship("User", lazy="joined", foreign_keys=[owner_id])
    members = db.relationship(
        "GroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    messages = db.relationship(
        "GroupMessage",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="GroupMessage.created_at",
    )

    def membership_for(self, user_id):
        for m in self.members:
            if m.user_id == user_id:
                return m
        return None

    def to_dict(self, include_members=True):
        data = {
            "id": self.id,
            "title": self.title,
            "bio": self.bio,
            "icon": self.icon,
            "owner_id": self.owner_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_members:
            data["users"] = [m.user.to_dict() for m in self.members if m.user is not None]
        return data

    def __repr__(self):
        return f"<Group id={self.id} {self.title} owner={self.owner_id}>"


class GroupMember(db.Model):
    __tablename__ = "group_user"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(
        db.Integer, db.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    last_read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    group = db.relationship("Group", back_populates="members")
    user = db.relationship("User", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("group_id", "user_id", name="uq_group_user"),
    )


class GroupMessage(db.Model):
    __tablename__ = "group_messages"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(
        db.Integer, db.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    group = db.relationship("Group", back_populates="messages")
    user = db.relationship("User", lazy="joined")

    __table_args__ = (
        db.Index("ix_group_messages_group_created", "group_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "group_id": self.group_id,
            "user_id": self.user_id,
            "message": self.message,
            "user": self.user.to_dict() if self.user else None,
            "created_at": _iso(self.created_at),
        }


# ======================
# Notifications / moderation / content
# ======================
class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship(
        "User",
        backref=db.backref("notifications", passive_deletes=True, lazy="dynamic"),
    )

    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "read"),
    )

    def mark_as_read(self):
        if not self.read:
            self.read = True
            self.read_at = datetime.utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": bool(self.read),
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
        }


class Report(db.Model):
    __tablename__ = "reports"

    id = db.Column(db.Integer, primary_key=True)
    reporter_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    reported_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    message_id = db.Column(
        db.Integer, db.ForeignKey("messages.id", ondelete="SET NULL"), nullable=True
    )
    group_id = db.Column(
        db.Integer, db.ForeignKey("groups.id", ondelete="SET NULL"), nullable=True
    )
    reason = db.Column(db.String(255), nullable=False)
    details = db.Column(db.Text)
    resolved = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reporter = db.relationship("User", foreign_keys=[reporter_id], lazy="joined")
    reported_user = db.relationship("User", foreign_keys=[reported_user_id], lazy="joined")

    __table_args__ = (db.Index("ix_reports_resolved", "resolved"),)

    def to_dict(self):
        return {
            "id": self.id,
            "reporter_id": self.reporter_id,
            "reported_user_id": self.reported_user_id,
            "message_id": self.message_id,
            "group_id": self.group_id,
            "reason": self.reason,
            "details": self.details,
            "resolved": bool(self.resolved),
            "created_at": _iso(self.created_at),
        }


RESOURCE_TYPES = ("article", "video", "audio", "link", "exercise")


class Resource(db.Model):
    __tablename__ = "resources"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False)
    url = db.Column(db.String(500))
    description = db.Column(db.Text)
    content = db.Column(db.Text)
    tags = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "url": self.url,
            "description": self.description,
            "content": self.content,
            "tags": self.tags,
            "created_at": _iso(self.created_at),
        }


# ======================
# AI companion
# ======================
class AIMessage(db.Model):
    __tablename__ = "ai_messages"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id = db.Column(
        db.Integer, db.ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    prompt = db.Column(db.Text, nullable=False)
    response = db.Column(db.Text, nullable=False)
    meta = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship(
        "User",
        backref=db.backref("ai_messages", passive_deletes=True, lazy="dynamic"),
    )

    __table_args__ = (
        db.Index("ix_ai_messages_user_conversation", "user_id", "conversation_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "prompt": self.prompt,
            "response": self.response,
            "meta": self.meta or {},
            "created_at": _iso(self.created_at),
        }
