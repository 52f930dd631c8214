"""
Spot record and the abstract base class for spot providers.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Spot times a little ahead of the local clock are taken as today, not yesterday
CLOCK_SKEW = timedelta(minutes=5)


class SpotFormat(str, Enum):
    """Line grammar / server flavor that produced a spot."""
    DXSPIDER = "dxspider"
    ARCLUSTER = "arcluster"
    CC_CLUSTER = "cc_cluster"
    RBN = "rbn"

    @classmethod
    def conventional(cls):
        """Flavors sharing the conventional spot grammar."""
        return (cls.DXSPIDER, cls.ARCLUSTER, cls.CC_CLUSTER)


@dataclass(frozen=True)
class Spot:
    """Represents a single spot announced by a cluster server."""
    frequency_khz: float
    dx_callsign: str
    spotter_callsign: str
    timestamp: str  # HHMM or HHMMZ, UTC, as published
    comment: str = ""
    source_format: SpotFormat = SpotFormat.DXSPIDER
    locator: Optional[str] = None  # Spotter locator appended by some nodes

    def spotted_at(self, now: Optional[datetime] = None) -> datetime:
        """
        Resolve the published time of day to a full UTC datetime.

        Cluster feeds carry no date, so the most recent matching time that is
        not later than ``now`` (plus a small clock skew allowance) is used.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            Timezone-aware UTC datetime
        """
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        hour, minute = int(self.timestamp[:2]), int(self.timestamp[2:4])
        spotted = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if spotted > now + CLOCK_SKEW:
            spotted -= timedelta(days=1)
        return spotted

    def to_dict(self) -> dict:
        data = asdict(self)
        data['source_format'] = self.source_format.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class BaseSpotProvider(ABC):
    """Abstract base class for spot providers."""

    def __init__(self, source_name: str):
        """
        Initialize the provider.

        Args:
            source_name: Name of this data source (e.g., 'N0CALL@dxc.example.org:7300')
        """
        self.source_name = source_name

    @abstractmethod
    def start(self):
        """
        Start producing spots in the background.

        Returns:
            The channel spots are delivered through
        """
        pass

    @abstractmethod
    async def stop(self):
        """Stop producing spots and release the connection."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass
