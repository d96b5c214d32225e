from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from dashboard.db import session_scope
from dashboard.errors import NotFoundError, ValidationError
from dashboard.models import MESSAGE_ROLES, Conversation, Message, utcnow

DEFAULT_TITLE = "New Conversation"


class ConversationStore:
    """Append-only chat logs tied to a (provider, model) pair."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    @staticmethod
    def _get(s, conversation_id: str) -> Conversation:
        conv = s.get(Conversation, conversation_id)
        if conv is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conv

    def list(self) -> List[Dict[str, Any]]:
        with session_scope(self._sessions) as s:
            rows = s.query(Conversation).order_by(Conversation.updated_at.desc()).all()
            return [c.to_dict() for c in rows]

    def get(self, conversation_id: str) -> Dict[str, Any]:
        with session_scope(self._sessions) as s:
            return self._get(s, conversation_id).to_dict(with_messages=True)

    def create(self, provider: str, model: str, title: Optional[str] = None) -> Dict[str, Any]:
        if not provider or not model:
            raise ValidationError("provider and model are required")
        with session_scope(self._sessions) as s:
            conv = Conversation(provider=provider, model=model, title=title or DEFAULT_TITLE)
            s.add(conv)
            s.flush()
            return conv.to_dict(with_messages=True)

    def rename(self, conversation_id: str, title: str) -> Dict[str, Any]:
        with session_scope(self._sessions) as s:
            conv = self._get(s, conversation_id)
            conv.title = title
            conv.updated_at = utcnow()
            return conv.to_dict()

    def delete(self, conversation_id: str) -> None:
        with session_scope(self._sessions) as s:
            s.delete(self._get(s, conversation_id))

    def append_message(self, conversation_id: str, role: str, content: str) -> Dict[str, Any]:
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"role must be one of: {', '.join(MESSAGE_ROLES)}")
        with session_scope(self._sessions) as s:
            conv = self._get(s, conversation_id)
            now = utcnow()
            msg = Message(
                conversation_id=conv.id, role=role, content=content, created_at=now, seq=len(conv.messages),
            )
            s.add(msg)
            conv.updated_at = now
            s.flush()
            return msg.to_dict()
