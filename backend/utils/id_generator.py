"""
Short prefixed ID generator for Starcluster entities.

Format: {prefix}_{base36_random}
- sc_xxxxxxxx  - cluster
- ix_xxxxxxxx  - interaction

Users keep UUIDs (see models/domain/user.py).

8 chars base36 = 36^8 = 2.8 trillion unique IDs per type
Total length: 11 chars (2 prefix + 8 random)
"""
import secrets
import re
import uuid
from typing import Optional

# Base36 alphabet (lowercase letters + digits)
ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
BASE = len(ALPHABET)  # 36

# Valid prefixes
PREFIXES = {
    'cluster': 'sc',
    'interaction': 'ix',
}

# Reverse mapping for validation
PREFIX_TO_TYPE = {v: k for k, v in PREFIXES.items()}

# Regex for validation
ID_PATTERN = re.compile(r'^(sc|ix)_[0-9a-z]{8}$')


def _random_base36(length: int = 8) -> str:
    """Generate random base36 string"""
    result = []
    for _ in range(length):
        result.append(ALPHABET[secrets.randbelow(BASE)])
    return ''.join(result)


def generate_id(entity_type: str) -> str:
    """
    Generate a new short ID for the given entity type.

    Args:
        entity_type: One of 'cluster', 'interaction'

    Returns:
        Short ID like 'sc_x5b8r2yj'

    Raises:
        ValueError: If entity_type is invalid
    """
    if entity_type not in PREFIXES:
        raise ValueError(f"Invalid entity type: {entity_type}. "
                         f"Must be one of: {list(PREFIXES.keys())}")

    prefix = PREFIXES[entity_type]
    return f"{prefix}_{_random_base36(8)}"


def validate_id(id_str: str, entity_type: Optional[str] = None) -> bool:
    """
    Check if a string is a valid short ID.

    Args:
        id_str: String to validate
        entity_type: If given, the ID must also carry this type's prefix

    Returns:
        True if valid, False otherwise
    """
    if not id_str or not isinstance(id_str, str):
        return False
    if not ID_PATTERN.match(id_str):
        return False
    if entity_type is not None:
        return get_id_type(id_str) == entity_type
    return True


def get_id_type(id_str: str) -> Optional[str]:
    """Extract the entity type ('cluster', 'interaction') from an ID, or None."""
    if not id_str or not ID_PATTERN.match(id_str):
        return None
    return PREFIX_TO_TYPE.get(id_str[:2])


def is_uuid(id_str: str) -> bool:
    """Check if a string looks like a UUID (user IDs)."""
    if not id_str or not isinstance(id_str, str):
        return False
    uuid_pattern = re.compile(
        r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
        re.IGNORECASE
    )
    return bool(uuid_pattern.match(id_str))


# Convenience functions for each type
def generate_cluster_id() -> str:
    """Generate a new cluster ID"""
    return generate_id('cluster')


def generate_interaction_id() -> str:
    """Generate a new interaction ID"""
    return generate_id('interaction')


def generate_user_id() -> str:
    """Generate a new user ID (UUID format)"""
    return str(uuid.uuid4())
