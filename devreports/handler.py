"""HTTP-independent request handling for device message queries."""

from __future__ import annotations

import re
from datetime import datetime
from http import HTTPStatus
from typing import Any, Mapping, Protocol

from devreports.models import DeviceMessage

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MIN_LIMIT = 10
MAX_LIMIT = 100

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class _DeviceMessages(Protocol):
    def get_device_messages(
        self, unit_guid: str, page: int, limit: int
    ) -> tuple[list[DeviceMessage], int]: ...


def parse_int(value: str | None, default: int) -> int:
    """Parse a decimal integer, or return ``default`` when it is empty or invalid."""
    if not value or not _INT_RE.fullmatch(value):
        return default
    number = int(value)
    return number if _INT64_MIN <= number <= _INT64_MAX else default


def error_payload(message: str) -> dict[str, str]:
    """Body of an error response with an RFC 3339 timestamp."""
    timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
    if timestamp.endswith("+00:00"):
        timestamp = timestamp[: -len("+00:00")] + "Z"
    return {"error": message, "timestamp": timestamp}


class Handler:
    """Builds responses for ``GET /api/v1/devices/{id}``."""

    def __init__(self, service: _DeviceMessages) -> None:
        self.service = service

    def get_device_messages(
        self, unit_guid: str, query: Mapping[str, str] | None
    ) -> tuple[int, dict[str, Any]]:
        """Return the status code and JSON body for one page of a device's messages."""
        if not unit_guid:
            return HTTPStatus.BAD_REQUEST, error_payload("unit_guid is required")

        query = query or {}
        page = max(parse_int(query.get("page"), DEFAULT_PAGE), 1)
        limit = parse_int(query.get("limit"), DEFAULT_LIMIT)
        if limit < 1:
            limit = MIN_LIMIT
        limit = min(limit, MAX_LIMIT)

        try:
            messages, total = self.service.get_device_messages(unit_guid, page, limit)
        except Exception as exc:  # any service failure becomes a 500
            return HTTPStatus.INTERNAL_SERVER_ERROR, error_payload(str(exc))

        if not messages:
            return HTTPStatus.NOT_FOUND, error_payload("device not found or no messages")

        return HTTPStatus.OK, {
            "unit_guid": unit_guid,
            "invid": messages[0].invid,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
            "messages": [msg.to_dict() for msg in messages],
        }