"""Reader for tab-separated device message files."""

from __future__ import annotations

import csv
import logging
import os
import re
from typing import TextIO

from devreports.models import DeviceMessage, ParseResult

logger = logging.getLogger(__name__)

FIELDS_PER_RECORD = 11
HEADER_ROWS = 2

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class ParseError(Exception):
    """Raised when a message file cannot be read or has a bad layout."""


def _to_int(text: str) -> int:
    text = text.strip()
    if not _INT_RE.fullmatch(text):
        return 0
    value = int(text)
    return value if _INT64_MIN <= value <= _INT64_MAX else 0


def _read_records(fh: TextIO) -> list[list[str]]:
    reader = csv.reader(fh, delimiter="\t", strict=True)
    records = []
    for row in reader:
        if not row:
            continue
        if len(row) != FIELDS_PER_RECORD:
            raise ParseError(f"record on line {reader.line_num}: wrong number of fields")
        records.append(row)
    return records


def _to_message(record: list[str]) -> DeviceMessage:
    (number, mqtt, invid, unit_guid, message_id, message_text,
     context, message_class, level, area, address) = record
    return DeviceMessage(
        number=_to_int(number),
        mqtt=mqtt.strip(),
        invid=invid.strip(),
        unit_guid=unit_guid.strip(),
        message_id=message_id.strip(),
        message_text=message_text.strip(),
        context=context.strip(),
        message_class=message_class.strip(),
        level=_to_int(level),
        area=area.strip(),
        address=address.strip(),
    )


def parse_tsv(file_path: str | os.PathLike[str]) -> ParseResult:
    """Parse a message file: a description row, a header row, then data rows."""
    op = "parser.parse_tsv"
    path = os.fspath(file_path)
    extra = {"op": op, "file": path}

    try:
        fh = open(path, encoding="utf-8", newline="")
    except OSError as exc:
        logger.error("failed to open file", extra={**extra, "error": str(exc)})
        raise ParseError(f"{op}: {exc}") from exc

    with fh:
        try:
            records = _read_records(fh)
        except (ParseError, csv.Error, UnicodeDecodeError) as exc:
            logger.error("failed read CSV", extra={**extra, "error": str(exc)})
            raise ParseError(f"{op}: failed read CSV: {exc}") from exc

    logger.info("file loaded", extra={**extra, "total_rows": len(records)})

    if len(records) < HEADER_ROWS + 1:
        logger.error("file too short", extra={**extra, "rows": len(records)})
        raise ParseError(f"{op}: file too short, need at least 3 rows")

    result = ParseResult(
        file_name=path,
        messages=[_to_message(record) for record in records[HEADER_ROWS:]],
    )

    logger.info("parsing completed", extra={**extra, "parsed_messages": len(result.messages)})
    return result