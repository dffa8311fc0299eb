"""
Utility functions
"""
from .datetime_utils import utc_now, ensure_utc, days_between, hours_between
from .id_generator import generate_cluster_id, generate_interaction_id, generate_user_id

__all__ = [
    'utc_now',
    'ensure_utc',
    'days_between',
    'hours_between',
    'generate_cluster_id',
    'generate_interaction_id',
    'generate_user_id',
]
