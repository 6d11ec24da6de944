"""Helper utilities for the Bounty Escrow Engine"""

import uuid

# Public-facing ID prefixes per entity
ID_PREFIXES = {
    "bounty": "BT",
    "escrow": "EA",
    "participant": "BP",
    "contribution": "EC",
    "release": "ER",
    "transaction": "WT",
}


def generate_id(entity_type: str) -> str:
    """
    Generate a public ID such as ``BT3F9A0C1D22E4``.

    Args:
        entity_type: key of ID_PREFIXES (bounty, escrow, ...)
    """
    prefix = ID_PREFIXES.get(entity_type)
    if prefix is None:
        raise ValueError(f"Unknown entity type for ID generation: {entity_type}")
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"
