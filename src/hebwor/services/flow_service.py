"""Persistence of the user's in-flight flow (assessment or exercise session)."""
import logging
from typing import Optional, Type, TypeVar

from sqlalchemy.orm import Session

from hebwor.models.base import utcnow
from hebwor.models.flow_models import FlowKind, FlowState
from hebwor.models.models import ConversationState
from hebwor.services.progress_store import ProgressStore

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=FlowState)


class FlowService:
    """Service for saving, loading and clearing per-user flow state.

    A user has at most one flow at a time; saving a flow of another kind
    replaces the previous one.
    """

    def __init__(self, db: Session):
        """Initialize the service with a database session."""
        self.db = db
        self.store = ProgressStore(db)

    def _get_row(self, user_id: int) -> Optional[ConversationState]:
        return self.db.get(ConversationState, user_id, populate_existing=True)

    def save(self, user_id: int, flow: FlowState) -> None:
        """Store the flow as the user's active one."""
        row = self._get_row(user_id)
        if row is None:
            row = ConversationState(user_id=user_id)
            self.db.add(row)
        elif row.flow_kind != flow.kind.value:
            logger.info(f"Replacing {row.flow_kind} flow of user {user_id} with {flow.kind.value}")
        row.flow_kind = flow.kind.value
        row.state_data = flow.to_data()
        row.updated_at = utcnow()
        self.store.commit()

    def load(self, user_id: int, flow_type: Type[F]) -> Optional[F]:
        """Load the user's flow if it is of the requested type."""
        row = self._get_row(user_id)
        if row is None or row.flow_kind != flow_type.kind.value:
            return None
        return flow_type.from_data(row.state_data)

    def clear(self, user_id: int, kind: Optional[FlowKind] = None) -> bool:
        """Delete the user's flow. With ``kind`` given, only a flow of that kind.

        Returns True if a flow was deleted.
        """
        row = self._get_row(user_id)
        if row is None or (kind is not None and row.flow_kind != kind.value):
            return False
        self.db.delete(row)
        self.store.commit()
        return True
