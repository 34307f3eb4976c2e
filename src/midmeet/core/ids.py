"""
Identifier generation.

- Session codes are short, uppercase and human-shareable, so callers must check them
  for collisions against live sessions.
- Participant ids (and fallback venue ids) are long enough over a 62-letter alphabet
  that collisions are negligible without a check.
"""

from __future__ import annotations

import secrets
import string

SESSION_CODE_ALPHABET = string.ascii_uppercase + string.digits
OPAQUE_ID_ALPHABET = string.ascii_letters + string.digits


def new_session_code(length: int = 6) -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def new_opaque_id(length: int = 20) -> str:
    return "".join(secrets.choice(OPAQUE_ID_ALPHABET) for _ in range(length))


def normalize_session_code(code: str) -> str:
    """Codes are typed by humans: ignore surrounding spaces and case."""
    return code.strip().upper()
