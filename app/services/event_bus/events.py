"""
Event type definitions for the event bus.
"""
from enum import Enum


class EventType(str, Enum):
    """Event types for the event bus."""

    # System events
    SYSTEM_STARTUP = "system:startup"
    SYSTEM_SHUTDOWN = "system:shutdown"

    # Import job lifecycle
    IMPORT_STARTED = "import:started"
    IMPORT_CHUNK_COMMITTED = "import:chunk_committed"
    IMPORT_PAUSED = "import:paused"
    IMPORT_COMPLETED = "import:completed"
    IMPORT_FAILED = "import:failed"
    IMPORT_ROLLED_BACK = "import:rolled_back"

    # Extraction jobs
    EXTRACTION_COMPLETED = "extraction:completed"

    # GP51 health
    HEALTH_STATUS_CHANGED = "health:status_changed"
