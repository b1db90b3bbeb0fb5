"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class StorageMode(str, Enum):
    """Режим хранения данных."""
    DURABLE = "durable"
    MEMORY = "memory"


class InboundEvent(str, Enum):
    """События, принимаемые от водителей."""
    REGISTER_DRIVER = "register-driver"
    LOCATION_UPDATE = "location-update"
    SYNC_LOCATIONS = "sync-locations"


class OutboundEvent(str, Enum):
    """События, отправляемые клиентам."""
    DRIVERS_UPDATED = "drivers-updated"
    LOCATION_UPDATE = "location-update"
    LOCATIONS_SNAPSHOT = "locations-snapshot"
    REGISTERED = "registered"
    LOCATION_RECORDED = "location-recorded"
    SYNC_COMPLETE = "sync-complete"
    ERROR = "error"
