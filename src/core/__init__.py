# src/core/__init__.py
"""
Доменный слой (Core Domain).
Логика присутствия и геолокации, независимая от транспорта.
"""

from src.core.tracking import DriverRecord, RecordedLocation, TrackingService

__all__ = [
    "DriverRecord",
    "RecordedLocation",
    "TrackingService",
]
