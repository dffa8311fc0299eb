"""
ResonanceRecord domain model - persisted pairwise resonance with history
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from utils.datetime_utils import ensure_utc, utc_now

DEFAULT_HISTORY_LIMIT = 50


def pair_key(user_a_id: str, user_b_id: str) -> str:
    """Canonical unordered pair key: sorted ids joined by ':'"""
    lo, hi = sorted((user_a_id, user_b_id))
    return f"{lo}:{hi}"


def ordered_pair(user_a_id: str, user_b_id: str) -> Tuple[str, str]:
    lo, hi = sorted((user_a_id, user_b_id))
    return lo, hi


@dataclass
class ResonanceSnapshot:
    """One point in a pair's resonance history"""
    resonance: float
    factors: Dict[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.timestamp = ensure_utc(self.timestamp)

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'resonance': self.resonance,
            'factors': dict(self.factors),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ResonanceSnapshot':
        return cls(
            resonance=float(data['resonance']),
            factors={k: float(v) for k, v in (data.get('factors') or {}).items()},
            timestamp=ensure_utc(data.get('timestamp')) or utc_now(),
        )


@dataclass
class ResonanceRecord:
    """
    Pairwise resonance record

    Storage: PostgreSQL (resonance_records table), keyed by canonical pair key

    Created on first computation; updated in place (never replaced) on
    recompute. History is append-only and bounded to the most recent
    `history_limit` snapshots.
    """
    user_a_id: str
    user_b_id: str

    # Signals, each in [0, 1]
    tag_similarity: float = 0.0
    interaction_score: float = 0.0
    content_preference_match: float = 0.0
    random_factor: float = 0.0

    # Combined score in [0, 100]
    total_resonance: float = 0.0

    calculated_at: Optional[datetime] = None
    history: List[ResonanceSnapshot] = field(default_factory=list)
    history_limit: int = DEFAULT_HISTORY_LIMIT

    def __post_init__(self):
        """Canonicalize pair ordering and validate ranges"""
        if not self.user_a_id or not self.user_b_id:
            raise ValueError("ResonanceRecord requires both user ids")
        self.user_a_id, self.user_b_id = ordered_pair(self.user_a_id, self.user_b_id)

        for name in ('tag_similarity', 'interaction_score',
                     'content_preference_match', 'random_factor'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if not 0.0 <= self.total_resonance <= 100.0:
            raise ValueError(f"total_resonance must be in [0, 100], got {self.total_resonance}")

        if len(self.history) > self.history_limit:
            self.history = self.history[-self.history_limit:]

    @property
    def key(self) -> str:
        return pair_key(self.user_a_id, self.user_b_id)

    def apply(self, snapshot: ResonanceSnapshot) -> None:
        """
        Record a fresh computation.

        Updates the current signal values and appends the snapshot to history,
        dropping the oldest entries beyond history_limit.
        """
        factors = snapshot.factors
        self.tag_similarity = factors.get('tag_similarity', self.tag_similarity)
        self.interaction_score = factors.get('interaction_score', self.interaction_score)
        self.content_preference_match = factors.get(
            'content_preference_match', self.content_preference_match
        )
        self.random_factor = factors.get('random_factor', self.random_factor)
        self.total_resonance = snapshot.resonance
        self.calculated_at = snapshot.timestamp

        self.history.append(snapshot)
        if len(self.history) > self.history_limit:
            del self.history[:len(self.history) - self.history_limit]

    def recent_history(self, limit: int = 10) -> List[ResonanceSnapshot]:
        """Most recent snapshots first"""
        return list(reversed(self.history[-limit:]))
