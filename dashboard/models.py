import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from dashboard.db import Base

JOB_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")
JOB_KINDS = ("text", "image")
RESULT_TYPES = ("text", "image", "video", "audio")
CREDENTIAL_STATUSES = ("unknown", "connected", "error")
MESSAGE_ROLES = ("user", "assistant", "system")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; everything is stored in UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Job(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    kind = Column(String(16), nullable=False)  # text|image
    provider = Column(String(32), nullable=False, index=True)
    model = Column(String(255), nullable=True)
    prompt = Column(Text, nullable=False, default="")
    input = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)
    remote_token = Column(String(255), nullable=True)  # ComfyUI prompt_id
    poll_attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)  # category + remediation steps
    conversation_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    result = relationship("Result", back_populates="job", uselist=False, cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "provider": self.provider,
            "model": self.model,
            "prompt": self.prompt,
            "input": self.input or {},
            "status": self.status,
            "progress": self.progress,
            "remote_token": self.remote_token,
            "poll_attempts": self.poll_attempts,
            "error": self.error,
            "error_details": self.error_details,
            "conversation_id": self.conversation_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }


class Result(Base):
    __tablename__ = "results"

    id = Column(String(36), primary_key=True, default=new_id)
    job_id = Column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), unique=True, nullable=False)
    type = Column(String(16), nullable=False)  # text|image|video|audio
    content = Column(Text, nullable=False)  # inline text or path relative to storage_path
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    job = relationship("Job", back_populates="result")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "type": self.type,
            "content": self.content,
            "metadata": self.meta or {},
            "created_at": _iso(self.created_at),
        }


class ProviderCredential(Base):
    __tablename__ = "provider_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String(32), unique=True, nullable=False)
    api_key = Column(Text, nullable=False)  # hex(nonce|tag|ciphertext), never plaintext
    endpoint_url = Column(String(500), nullable=True)
    default_model = Column(String(255), nullable=True)
    last_tested = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default="unknown")
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Profile(Base):
    """A named, reusable provider setup; several may exist per provider."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    kind = Column("type", String(16), nullable=False, default="text")
    provider = Column(String(32), nullable=False, index=True)
    model = Column(String(255), nullable=True)
    options = Column(JSON, nullable=True)
    prompt_template = Column(Text, nullable=True)
    api_key = Column(Text, nullable=True)  # same vault format as provider_settings
    url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False, default="New Conversation")
    provider = Column(String(32), nullable=False)
    model = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.seq",
        cascade="all, delete-orphan",
    )

    def to_dict(self, with_messages: bool = False) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "provider": self.provider,
            "model": self.model,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if with_messages:
            data["messages"] = [m.to_dict() for m in self.messages]
        return data


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    # position within the conversation; timestamps can collide
    seq = Column(Integer, nullable=False, default=0)

    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }
