"""
Conversation Manager

Loads the bounded history window for a conversation and appends each
successful user/agent exchange. Conversations are created lazily on the
first recorded exchange when the caller supplies no id.
"""

import logging
from typing import List, Optional

from sqlalchemy import select

from ..common.database import Database
from ..common.errors import AuthorizationError, NotFoundError
from ..common.models import Conversation, ConversationMessage, utcnow
from ..common.schemas import SenderRole
from .synthesizer import HistoryTurn

logger = logging.getLogger("mindops.retriever.conversation")

TITLE_LENGTH = 50


def derive_title(query: str) -> str:
    query = query.strip()
    if len(query) > TITLE_LENGTH:
        return query[:TITLE_LENGTH] + "..."
    return query


class ConversationManager:
    def __init__(self, db: Database, history_turns: int = 5):
        self.db = db
        self.history_turns = history_turns

    def get(self, conversation_id: str, user_id: str) -> Conversation:
        with self.db.session() as s:
            conversation = s.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        if conversation.user_id != user_id:
            raise AuthorizationError("You do not have access to this conversation")
        return conversation

    def load_history(self, conversation_id: Optional[str], user_id: str) -> List[HistoryTurn]:
        """Last ``history_turns`` messages, oldest first. Empty for a new conversation."""
        if not conversation_id:
            return []
        self.get(conversation_id, user_id)

        with self.db.session() as s:
            rows = list(s.scalars(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
                .limit(self.history_turns)
            ))
        rows.reverse()
        return [HistoryTurn(role=r.sender_role, content=r.content) for r in rows]

    def record_exchange(
        self,
        user_id: str,
        query: str,
        answer: str,
        agent_mindop_id: str,
        conversation_id: Optional[str] = None,
        mindop_id: Optional[str] = None,
    ) -> str:
        """
        Append the user message and the agent answer.

        Args:
            agent_mindop_id: Workspace that produced the answer
            conversation_id: Existing conversation; created when omitted
            mindop_id: Workspace the conversation belongs to

        Returns:
            The conversation id
        """
        now = utcnow()
        with self.db.session() as s:
            if conversation_id:
                conversation = s.get(Conversation, conversation_id)
                if conversation is None:
                    raise NotFoundError(f"Conversation not found: {conversation_id}")
                if conversation.user_id != user_id:
                    raise AuthorizationError("You do not have access to this conversation")
            else:
                conversation = Conversation(
                    user_id=user_id,
                    mindop_id=mindop_id or agent_mindop_id,
                    title=derive_title(query),
                    created_at=now,
                )
                s.add(conversation)
                s.flush()
                logger.info("Created conversation %s for user %s", conversation.id, user_id)

            s.add(ConversationMessage(
                conversation_id=conversation.id,
                sender_role=SenderRole.USER.value,
                content=query,
                created_at=now,
            ))
            s.flush()
            s.add(ConversationMessage(
                conversation_id=conversation.id,
                sender_role=SenderRole.AGENT.value,
                content=answer,
                mindop_id=agent_mindop_id,
                created_at=utcnow(),
            ))
            conversation.updated_at = utcnow()
            return conversation.id

    def list_messages(self, conversation_id: str, user_id: str) -> List[ConversationMessage]:
        self.get(conversation_id, user_id)
        with self.db.session() as s:
            return list(s.scalars(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.created_at, ConversationMessage.id)
            ))
