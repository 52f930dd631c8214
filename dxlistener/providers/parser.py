"""
Spot line classification and parsing.

Every supported cluster announces spots on lines starting with "DX de":

    DX de W1AW:      14025.0  JA1ABC       CQ DX                          1234Z
    DX de RBN-7:     7030.0   K5XYZ        CW    18 dB  22 WPM  CQ        0512Z

DXSpider, AR-Cluster and CC Cluster share the first (conventional) grammar;
the server flavor is learned from its banner, not from the line. Reverse
Beacon Network lines carry a mode / SNR / speed block right after the dx
callsign. Everything else (banners, talk, WCY/WWV bulletins, prompts) is
ignored.
"""
import re
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

from dxlistener.providers.base import Spot, SpotFormat
from dxlistener.providers.errors import (
    ParseError, BadFrequency, MissingTimestamp, BadCallsign
)
from dxlistener.utils.validators import (
    is_callsign_token, is_locator_token, is_time_token, parse_frequency
)

logger = logging.getLogger(__name__)

# "DX de <SPOTTER>:" followed by the rest of the announcement
CANDIDATE_PATTERN = re.compile(r'^DX de\s+(?P<spotter>[^\s:]+):(?P<rest>.*)$')

RBN_MODE_PATTERN = re.compile(r'^[A-Z][A-Z0-9-]*$', re.IGNORECASE)
RBN_NUMBER_PATTERN = re.compile(r'^[+-]?\d{1,3}$')
RBN_SPEED_UNITS = ('WPM', 'BPS')

# Server self-identification in banners and welcome text
SERVER_PATTERNS = [
    (re.compile(r'dx\s*spider', re.IGNORECASE), SpotFormat.DXSPIDER),
    (re.compile(r'\bar-?cluster\b', re.IGNORECASE), SpotFormat.ARCLUSTER),
    (re.compile(r'\bcc[\s_-]?cluster\b|\bCCC_', re.IGNORECASE), SpotFormat.CC_CLUSTER),
]


@dataclass(frozen=True)
class SpotCandidate:
    """A line that looks like a spot, tagged with the grammar to parse it with."""
    format: SpotFormat
    line: str
    spotter: str
    tokens: Tuple[str, ...]


def _rbn_telemetry_length(tokens: Sequence[str]) -> int:
    """
    Count the RBN telemetry tokens following the dx callsign.

    Returns 5 for "MODE SNR dB SPEED WPM", 3 for "MODE SNR dB" (digital
    modes carry no speed) and 0 when the block is absent.
    """
    block = tokens[2:7]
    if len(block) < 3:
        return 0

    mode, snr, unit = block[0], block[1], block[2]
    if not (RBN_MODE_PATTERN.match(mode) and RBN_NUMBER_PATTERN.match(snr) and unit.lower() == 'db'):
        return 0

    if len(block) == 5 and RBN_NUMBER_PATTERN.match(block[3]) and block[4].upper() in RBN_SPEED_UNITS:
        return 5
    return 3


def classify(line: str, conventional_format: SpotFormat = SpotFormat.DXSPIDER) -> Optional[SpotCandidate]:
    """
    Decide whether a line is a spot announcement and which grammar it follows.

    Args:
        line: Cleaned line from the server
        conventional_format: Tag for conventional-grammar spots (the server flavor)

    Returns:
        SpotCandidate, or None when the line is not a spot
    """
    match = CANDIDATE_PATTERN.match(line)
    if not match:
        return None

    tokens = tuple(match.group('rest').split())

    if _rbn_telemetry_length(tokens):
        spot_format = SpotFormat.RBN
    else:
        spot_format = conventional_format

    return SpotCandidate(
        format=spot_format,
        line=line,
        spotter=match.group('spotter'),
        tokens=tokens,
    )


def identify_server(text: str) -> Optional[SpotFormat]:
    """
    Recognize the cluster software from banner or welcome text.

    Args:
        text: Banner line(s)

    Returns:
        Conventional SpotFormat of the server, or None if not recognized
    """
    for pattern, spot_format in SERVER_PATTERNS:
        if pattern.search(text):
            return spot_format
    return None


def _split_fields(candidate: SpotCandidate):
    """
    Pick frequency, dx callsign, comment tokens, time and locator out of a candidate.

    Raises:
        BadFrequency, MissingTimestamp, BadCallsign
    """
    tokens = candidate.tokens
    line = candidate.line

    if not tokens:
        raise BadFrequency(line)

    frequency = parse_frequency(tokens[0])
    if frequency is None:
        raise BadFrequency(line, tokens[0])

    end = len(tokens)
    locator = None
    if end >= 3 and is_locator_token(tokens[-1]) and is_time_token(tokens[-2]):
        locator = tokens[-1].upper()
        end -= 1

    time_index = end - 1
    if time_index < 1 or not is_time_token(tokens[time_index]):
        raise MissingTimestamp(line)

    if time_index < 2:
        # Frequency followed directly by the time
        raise BadCallsign(line)

    dx_callsign = tokens[1]
    if not is_callsign_token(dx_callsign):
        raise BadCallsign(line, dx_callsign)

    return frequency, dx_callsign, tokens[2:time_index], tokens[time_index], locator


def _parse_conventional(candidate: SpotCandidate) -> Spot:
    frequency, dx_callsign, comment, timestamp, locator = _split_fields(candidate)

    return Spot(
        frequency_khz=frequency,
        dx_callsign=dx_callsign,
        spotter_callsign=candidate.spotter,
        timestamp=timestamp,
        comment=' '.join(comment),
        source_format=candidate.format,
        locator=locator,
    )


def _parse_rbn(candidate: SpotCandidate) -> Spot:
    frequency, dx_callsign, comment, timestamp, locator = _split_fields(candidate)

    # Mode, SNR and speed stay in the comment as sent
    telemetry = _rbn_telemetry_length(candidate.tokens)
    if not telemetry or telemetry > len(comment):
        raise ParseError(candidate.line, f"Missing RBN mode/SNR block in spot: {candidate.line!r}")

    return Spot(
        frequency_khz=frequency,
        dx_callsign=dx_callsign,
        spotter_callsign=candidate.spotter,
        timestamp=timestamp,
        comment=' '.join(comment),
        source_format=SpotFormat.RBN,
        locator=locator,
    )


EXTRACTORS: Dict[SpotFormat, Callable[[SpotCandidate], Spot]] = {
    SpotFormat.DXSPIDER: _parse_conventional,
    SpotFormat.ARCLUSTER: _parse_conventional,
    SpotFormat.CC_CLUSTER: _parse_conventional,
    SpotFormat.RBN: _parse_rbn,
}


def parse(candidate: SpotCandidate) -> Spot:
    """
    Parse a classified line into a Spot.

    Args:
        candidate: Result of classify()

    Returns:
        Spot with every field taken from the line

    Raises:
        ParseError: BadFrequency, MissingTimestamp or BadCallsign when the
            line does not fit its grammar completely
    """
    return EXTRACTORS[candidate.format](candidate)
