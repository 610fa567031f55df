"""
Input hygiene for the room server.
Display names and chat text are escaped; room keys are validated.
"""
import html
import re
import logging
from typing import Optional

security_logger = logging.getLogger('security')

ROOM_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


def sanitize_input(text: str, max_length: int = 1000) -> str:
    """
    Sanitize user input to prevent XSS and injection attacks.

    Args:
        text: Raw user input
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Truncate to max length
    text = text[:max_length]

    # HTML escape to prevent XSS
    text = html.escape(text)

    # Remove null bytes
    text = text.replace('\x00', '')

    return text


def validate_room_key(room_key: str) -> Optional[str]:
    """Return the room key if it is well formed, else None."""
    if room_key and ROOM_KEY_PATTERN.fullmatch(room_key):
        return room_key
    return None


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")
