"""Data records shared across the service."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class FileStatus(str, Enum):
    """Processing state of an input file."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


@dataclass
class DeviceMessage:
    """One message definition row for a device."""

    number: int = 0
    mqtt: str = ""
    invid: str = ""
    unit_guid: str = ""
    message_id: str = ""
    message_text: str = ""
    context: str = ""
    message_class: str = ""
    level: int = 0
    area: str = ""
    address: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Field values keyed by their JSON names."""
        return asdict(self)


@dataclass
class ParseResult:
    """Messages read from one input file."""

    file_name: str = ""
    messages: list[DeviceMessage] = field(default_factory=list)


@dataclass
class ProcessedFile:
    """A tracked input file and its processing state."""

    id: int = 0
    file_name: str = ""
    status: str = ""
    error_message: str = ""
    processed_at: datetime | None = None
    created_at: datetime | None = None