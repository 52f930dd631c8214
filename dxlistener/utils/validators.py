"""
Validation utilities for callsigns and spot tokens.
"""
import re
from typing import List, Optional

# Spotted station: letters/digits with optional portable parts (e.g. "JA1ABC", "K5XYZ/P", "EA8/DL1ABC")
CALLSIGN_TOKEN_PATTERN = re.compile(r'^(?=[A-Z0-9/]*[A-Z])[A-Z0-9]+(?:/[A-Z0-9]+)*$')

# Login identity: a callsign with an optional SSID (e.g. "N0CALL", "N0CALL-2")
LOGIN_IDENTITY_PATTERN = re.compile(r'^[A-Z0-9]+(?:/[A-Z0-9]+)*(?:-\d{1,2})?$', re.IGNORECASE)

# Plain decimal frequency, kHz
FREQUENCY_PATTERN = re.compile(r'^\d+(?:\.\d+)?$')

# HHMM with optional trailing Z
TIME_TOKEN_PATTERN = re.compile(r'^([01]\d|2[0-3])([0-5]\d)Z?$')

# Maidenhead locator, 4 or 6 characters
LOCATOR_PATTERN = re.compile(r'^[A-R]{2}\d{2}(?:[A-X]{2})?$', re.IGNORECASE)


def is_callsign_token(token: str) -> bool:
    """
    Check whether a token is shaped like a spotted callsign.

    Args:
        token: Token to check (already uppercased)

    Returns:
        True if callsign-shaped, False otherwise
    """
    if not token or len(token) > 20:
        return False
    return bool(CALLSIGN_TOKEN_PATTERN.match(token))


def validate_login_identity(identity: Optional[str]) -> bool:
    """
    Validate the callsign sent to the server at login.

    Args:
        identity: Callsign, optionally with an SSID suffix

    Returns:
        True if valid, False otherwise
    """
    if not identity:
        return False

    identity = identity.strip()
    if len(identity) < 3 or len(identity) > 15:
        return False

    return bool(LOGIN_IDENTITY_PATTERN.match(identity))


def parse_frequency(token: str) -> Optional[float]:
    """Parse a kHz frequency token, None if it is not a plain decimal."""
    if not FREQUENCY_PATTERN.match(token):
        return None
    return float(token)


def is_time_token(token: str) -> bool:
    return bool(TIME_TOKEN_PATTERN.match(token))


def is_locator_token(token: str) -> bool:
    return bool(LOCATOR_PATTERN.match(token))


def parse_prompts_string(prompts_str: str) -> List[str]:
    """
    Parse a comma-separated login prompt string into a list.

    Args:
        prompts_str: Comma-separated prompt substrings

    Returns:
        List of non-empty prompt substrings
    """
    if not prompts_str:
        return []

    return [p.strip() for p in prompts_str.split(',') if p.strip()]
