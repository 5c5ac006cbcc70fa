"""
Connections

Directed follow relationships between a requesting user and a target
workspace. Only an approved relationship authorizes collaboration queries.
"""

import logging
from typing import List

from sqlalchemy import select

from ..common.database import Database
from ..common.errors import (
    AuthorizationError,
    ConnectionRequiredError,
    InputValidationError,
    NotFoundError,
)
from ..common.models import FollowRequest, MindOp
from ..common.schemas import FollowStatus
from ..common.store import WorkspaceStore

logger = logging.getLogger("mindops.collaboration.connections")


class ConnectionManager:
    """Follow request lifecycle and the collaboration authorization gate."""

    def __init__(self, db: Database, workspace_store: WorkspaceStore):
        self.db = db
        self.workspaces = workspace_store

    def request_follow(self, requester_user_id: str, target_mindop_id: str) -> FollowRequest:
        """
        Ask to follow ``target_mindop_id``.

        Returns the existing relationship if one is already pending or
        approved; a rejected one is reopened as pending.
        """
        target = self.workspaces.get(target_mindop_id)
        if target.user_id == requester_user_id:
            raise InputValidationError("You cannot follow your own MindOp")

        with self.db.session() as s:
            existing = s.scalars(
                select(FollowRequest).where(
                    FollowRequest.requester_user_id == requester_user_id,
                    FollowRequest.target_mindop_id == target_mindop_id,
                )
            ).first()
            if existing is not None:
                if existing.status == FollowStatus.REJECTED.value:
                    existing.status = FollowStatus.PENDING.value
                    logger.info("Reopened follow %s", existing.id)
                return existing

            follow = FollowRequest(
                requester_user_id=requester_user_id,
                target_mindop_id=target_mindop_id,
                status=FollowStatus.PENDING.value,
            )
            s.add(follow)
            s.flush()
            logger.info("Follow requested: %s -> %s", requester_user_id, target_mindop_id)
            return follow

    def approve(self, follow_id: str, acting_user_id: str) -> FollowRequest:
        return self._set_status(follow_id, acting_user_id, FollowStatus.APPROVED)

    def reject(self, follow_id: str, acting_user_id: str) -> FollowRequest:
        return self._set_status(follow_id, acting_user_id, FollowStatus.REJECTED)

    def _set_status(self, follow_id: str, acting_user_id: str, status: FollowStatus) -> FollowRequest:
        with self.db.session() as s:
            follow = s.get(FollowRequest, follow_id)
            if follow is None:
                raise NotFoundError(f"Follow request not found: {follow_id}")
            target = s.get(MindOp, follow.target_mindop_id)
            if target is None or target.user_id != acting_user_id:
                raise AuthorizationError("Only the target MindOp owner can answer this request")
            follow.status = status.value
            logger.info("Follow %s %s by %s", follow_id, status.value, acting_user_id)
            return follow

    def list_pending(self, owner_user_id: str) -> List[FollowRequest]:
        """Pending requests addressed to the owner's workspace."""
        with self.db.session() as s:
            return list(s.scalars(
                select(FollowRequest)
                .join(MindOp, MindOp.id == FollowRequest.target_mindop_id)
                .where(
                    MindOp.user_id == owner_user_id,
                    FollowRequest.status == FollowStatus.PENDING.value,
                )
                .order_by(FollowRequest.created_at)
            ))

    def list_approved(self, requester_user_id: str) -> List[FollowRequest]:
        with self.db.session() as s:
            return list(s.scalars(
                select(FollowRequest)
                .where(
                    FollowRequest.requester_user_id == requester_user_id,
                    FollowRequest.status == FollowStatus.APPROVED.value,
                )
                .order_by(FollowRequest.created_at)
            ))

    def is_approved(self, requester_user_id: str, target_mindop_id: str) -> bool:
        with self.db.session() as s:
            return s.scalars(
                select(FollowRequest.id).where(
                    FollowRequest.requester_user_id == requester_user_id,
                    FollowRequest.target_mindop_id == target_mindop_id,
                    FollowRequest.status == FollowStatus.APPROVED.value,
                )
            ).first() is not None

    def require_approved(self, requester_user_id: str, target_mindop_id: str) -> None:
        if not self.is_approved(requester_user_id, target_mindop_id):
            raise ConnectionRequiredError(
                "You do not have an approved connection with this MindOp"
            )
