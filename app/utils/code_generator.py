"""
Cryptographically secure id generation for share links and commits.
"""
import secrets
import string
from datetime import datetime
from typing import Container

import store_keys

# Exclude ambiguous characters: 0, 1, O, I, L
ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits
                   if c not in "01OIL")

COMMIT_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_code(length: int = 8) -> str:
    """
    Generate a secure random code in format XXXX-XXXX.

    Uses the `secrets` module for cryptographic security.
    Excludes ambiguous characters (0, 1, O, I, L) for readability.

    Returns:
        str: A code like "9QKM-X7RT"
    """
    part1 = "".join(secrets.choice(ALPHABET) for _ in range(length // 2))
    part2 = "".join(secrets.choice(ALPHABET) for _ in range(length // 2))
    return f"{part1}-{part2}"


async def ensure_unique_code(store) -> str:
    """
    Generate a share code and verify it's unused in the durable store.

    Args:
        store: DurableStore holding share records

    Returns:
        str: A unique code not already in use
    """
    for _ in range(10):  # Max 10 attempts
        code = generate_code()
        if await store.get(store_keys.SHARE_KEY.format(share_id=code)) is None:
            return code
    raise RuntimeError("Failed to generate unique code after 10 attempts")


def generate_commit_id(created_at: datetime, taken: Container[str] = ()) -> str:
    """Commit id: ISO timestamp plus a 5 character random suffix."""
    timestamp = created_at.isoformat()
    while True:
        suffix = "".join(secrets.choice(COMMIT_SUFFIX_ALPHABET) for _ in range(5))
        commit_id = f"{timestamp}-{suffix}"
        if commit_id not in taken:
            return commit_id
