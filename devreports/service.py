"""Device message queries used by the HTTP layer."""

from __future__ import annotations

from typing import Protocol

from devreports.models import DeviceMessage


class _PaginatedMessages(Protocol):
    def get_messages_by_unit_guid_paginated(
        self, unit_guid: str, page: int, limit: int
    ) -> tuple[list[DeviceMessage], int]: ...


class DeviceService:
    """Reads a device's messages page by page."""

    def __init__(self, repo: _PaginatedMessages) -> None:
        self._repo = repo

    def get_device_messages(
        self, unit_guid: str, page: int, limit: int
    ) -> tuple[list[DeviceMessage], int]:
        """One page of the device's messages and the device's total message count."""
        return self._repo.get_messages_by_unit_guid_paginated(unit_guid, page, limit)