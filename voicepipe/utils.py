"""Centralized ID generation utilities for voicepipe."""

import uuid


def generate_session_id() -> str:
    """Generate a unique session ID.

    Returns:
        ``session-`` followed by 16 hex characters.
    """
    return f"session-{uuid.uuid4().hex[:16]}"


def generate_turn_id() -> str:
    """Generate a short per-turn ID used to tag timer and transcript events."""
    return uuid.uuid4().hex[:8]
