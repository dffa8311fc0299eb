"""
Interaction domain model
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from utils.id_generator import generate_interaction_id, validate_id
from utils.datetime_utils import ensure_utc, utc_now


class ActionType(str, Enum):
    """Interaction action types"""
    LIKE = "like"
    COMMENT = "comment"
    FORWARD = "forward"
    VIEW = "view"
    SHARE = "share"
    BOOKMARK = "bookmark"
    FOLLOW = "follow"

    @property
    def weight(self) -> float:
        """Relative strength of the action for interaction scoring"""
        return ACTION_WEIGHTS[self]


ACTION_WEIGHTS = {
    ActionType.LIKE: 1.0,
    ActionType.COMMENT: 5.0,
    ActionType.FORWARD: 3.0,
    ActionType.VIEW: 0.5,
    ActionType.SHARE: 4.0,
    ActionType.BOOKMARK: 2.0,
    ActionType.FOLLOW: 6.0,
}

# Actions that count as content creation for activity scoring
CONTENT_CREATION_ACTIONS = (ActionType.COMMENT, ActionType.FORWARD)


class TargetType(str, Enum):
    """What an interaction points at"""
    USER = "user"
    POST = "post"
    COMMENT = "comment"


@dataclass(frozen=True)
class Interaction:
    """
    Interaction domain model - storage-agnostic representation

    Storage: PostgreSQL (interactions table)

    Immutable: interactions are the source of truth for recomputing
    interaction-based resonance and activity scores. target_id is always the
    user on the receiving end; target_type records what was acted on (the
    user directly, or one of their posts/comments).

    ID format: ix_xxxxxxxx (11 chars)
    """
    actor_id: str
    target_id: str
    action_type: ActionType
    target_type: TargetType = TargetType.USER
    created_at: datetime = field(default_factory=utc_now)
    id: str = ""

    def __post_init__(self):
        """Validate and generate ID if needed"""
        # frozen dataclass: assign through object.__setattr__
        if not self.id:
            object.__setattr__(self, 'id', generate_interaction_id())
        elif not validate_id(self.id, 'interaction'):
            raise ValueError(f"Invalid interaction id: {self.id}")
        if not self.actor_id or not self.target_id:
            raise ValueError("Interaction requires actor_id and target_id")
        object.__setattr__(self, 'action_type', ActionType(self.action_type))
        object.__setattr__(self, 'target_type', TargetType(self.target_type))
        object.__setattr__(self, 'created_at', ensure_utc(self.created_at))

    @property
    def weight(self) -> float:
        return self.action_type.weight

    def involves(self, user_a: str, user_b: str) -> bool:
        """True if this interaction runs between the two users (either direction)"""
        return {self.actor_id, self.target_id} == {user_a, user_b}
