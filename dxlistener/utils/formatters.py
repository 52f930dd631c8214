"""
Message formatting utilities.
"""
from dxlistener.providers.base import Spot


def format_frequency(frequency_khz: float) -> str:
    """Format a kHz frequency in a human-readable way."""
    if frequency_khz >= 1_000_000:
        return f"{frequency_khz / 1_000_000:.4f} GHz"
    elif frequency_khz >= 1_000:
        return f"{frequency_khz / 1_000:.4f} MHz"
    else:
        return f"{frequency_khz:.1f} kHz"


def format_spot(spot: Spot, show_source: bool = False) -> str:
    """
    Format a spot as one line of text.

    Args:
        spot: Spot to format
        show_source: Append the source format tag (default: False)

    Returns:
        Text such as "1234Z  JA1ABC on 14.0250 MHz by W1AW - CQ DX"
    """
    line = f"{spot.timestamp:<5}  {spot.dx_callsign} on {format_frequency(spot.frequency_khz)} by {spot.spotter_callsign}"
    if spot.comment:
        line += f" - {spot.comment}"
    if spot.locator:
        line += f" [{spot.locator}]"
    if show_source:
        line += f" ({spot.source_format.value})"
    return line
