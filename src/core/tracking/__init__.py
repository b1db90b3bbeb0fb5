# src/core/tracking/__init__.py
"""
Домен трекинга.
Присутствие водителей, приём геолокации, история и рассылка наблюдателям.
"""

from src.core.tracking.models import DriverRecord, RecordedLocation, LocationSample
from src.core.tracking.broadcast import BroadcastHub, BroadcastEvent
from src.core.tracking.registry import PresenceRegistry
from src.core.tracking.service import TrackingService

__all__ = [
    "DriverRecord",
    "RecordedLocation",
    "LocationSample",
    "BroadcastHub",
    "BroadcastEvent",
    "PresenceRegistry",
    "TrackingService",
]
