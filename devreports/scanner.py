"""Directory scanner that queues new message files and builds device reports."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from datetime import datetime
from typing import Any, Protocol, Sequence

from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle

from devreports.config import Config
from devreports.models import DeviceMessage, FileStatus, ProcessedFile
from devreports.parser import ParseError, parse_tsv
from devreports.repository import RepositoryError

logger = logging.getLogger(__name__)

MAX_REPORT_ROWS = 30
_POLL_INTERVAL = 0.1


class _Repository(Protocol):
    def get_all_processed_files(self) -> list[ProcessedFile]: ...

    def update_file_status(self, file_name: str, status: str, error_message: str) -> None: ...

    def save_messages(self, messages: Sequence[DeviceMessage]) -> None: ...

    def get_all_messages_by_unit_guid(self, unit_guid: str) -> list[DeviceMessage]: ...


def _extra(**fields: Any) -> dict[str, Any]:
    return {"component": "scanner", **fields}


def _extension(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


class Scanner:
    """Periodically scans the input directory and processes new ``.tsv`` files.

    A non-positive queue size gives a one-slot queue.
    """

    def __init__(self, config: Config, repo: _Repository) -> None:
        self._config = config
        self._repo = repo
        self.queue: queue.Queue[str] = queue.Queue(
            maxsize=max(config.application.queue_size, 1)
        )

    def start(self, stop_event: threading.Event) -> None:
        """Run the workers and scan every period until ``stop_event`` is set."""
        app = self._config.application
        period = app.period.total_seconds()
        if period <= 0:
            raise ValueError("scan period must be positive")

        workers = [
            threading.Thread(
                target=self.worker,
                args=(stop_event, worker_id),
                name=f"scanner-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(app.workers)
        ]
        for thread in workers:
            thread.start()
        logger.info("workers started", extra=_extra(count=app.workers))
        logger.info(
            "scanner started",
            extra=_extra(interval=str(app.period), queue_size=app.queue_size),
        )

        self.scan()
        while not stop_event.wait(period):
            self.scan()

        for thread in workers:
            thread.join()
        logger.info("scanner stopped", extra=_extra())

    def scan(self) -> None:
        """Queue every input file that is new or failed earlier."""
        input_dir = self._config.application.input
        logger.info("scanning directory", extra=_extra(dir=input_dir))

        try:
            known = {f.file_name: f.status for f in self._repo.get_all_processed_files()}
        except RepositoryError as exc:
            logger.error("failed to get processed files from DB", extra=_extra(error=str(exc)))
            return

        try:
            with os.scandir(input_dir) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            logger.error("failed to read directory", extra=_extra(error=str(exc)))
            return

        new_files = []
        for entry in entries:
            if entry.is_dir() or _extension(entry.name) != ".tsv":
                continue
            status = known.get(entry.name)
            if status is None:
                new_files.append(entry.name)
                logger.info("new file found", extra=_extra(file=entry.name))
            elif status == FileStatus.ERROR:
                new_files.append(entry.name)
                logger.info("retry file with error", extra=_extra(file=entry.name))

        for file_name in new_files:
            try:
                self.queue.put_nowait(os.path.join(input_dir, file_name))
            except queue.Full:
                logger.error(
                    "queue is full, skipping file",
                    extra=_extra(file=file_name, queue_size=self._config.application.queue_size),
                )
            else:
                logger.info("file added to queue", extra=_extra(file=file_name))

        logger.info(
            "scan completed",
            extra=_extra(new_files=len(new_files), queue_size=self.queue.qsize()),
        )

    def worker(self, stop_event: threading.Event, worker_id: int) -> None:
        """Process queued files until ``stop_event`` is set."""
        logger.info("worker started", extra=_extra(worker_id=worker_id))
        while not stop_event.is_set():
            try:
                file_path = self.queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._handle(file_path, worker_id)
            finally:
                self.queue.task_done()
        logger.info("worker stopped", extra=_extra(worker_id=worker_id))

    def _set_status(self, file_name: str, status: FileStatus, message: str) -> Exception | None:
        try:
            self._repo.update_file_status(file_name, status.value, message)
        except RepositoryError as exc:
            return exc
        return None

    def _handle(self, file_path: str, worker_id: int) -> None:
        file_name = os.path.basename(file_path)
        max_retries = self._config.application.max_retries

        error = self._set_status(file_name, FileStatus.PROCESSING, "")
        if error is not None:
            logger.error(
                "failed to mark file as processing",
                extra=_extra(worker_id=worker_id, file=file_name, error=str(error)),
            )

        for attempt in range(1, max_retries + 1):
            try:
                self.process_file(file_path, file_name)
            except Exception as exc:  # any failure counts as a failed attempt
                error = exc
                logger.error(
                    "failed to process file",
                    extra=_extra(
                        worker_id=worker_id,
                        file=file_name,
                        attempt=attempt,
                        max_retries=max_retries,
                        error=str(exc),
                    ),
                )
                if attempt < max_retries:
                    wait = attempt * 2
                    logger.info(
                        "retrying file",
                        extra=_extra(
                            worker_id=worker_id,
                            file=file_name,
                            wait_time=f"{wait}s",
                            next_attempt=attempt + 1,
                        ),
                    )
                    time.sleep(wait)
                continue
            self._set_status(file_name, FileStatus.PROCESSED, "")
            logger.info(
                "file processed successfully",
                extra=_extra(worker_id=worker_id, file=file_name, attempt=attempt),
            )
            break
        else:
            if error is not None:
                self._set_status(file_name, FileStatus.ERROR, str(error))
                logger.error(
                    "file failed after all retries",
                    extra=_extra(
                        worker_id=worker_id,
                        file=file_name,
                        max_retries=max_retries,
                        error=str(error),
                    ),
                )

    def process_file(self, file_path: str, file_name: str) -> None:
        """Parse a file, store its messages and refresh each device's report."""
        logger.info("processing file", extra=_extra(file=file_name))

        try:
            result = parse_tsv(file_path)
        except ParseError as exc:
            raise ParseError(f"parse error: {exc}") from exc

        if not result.messages:
            raise ParseError("no messages found in file")

        logger.info(
            "file parsed successfully",
            extra=_extra(file=file_name, messages=len(result.messages)),
        )

        try:
            self._repo.save_messages(result.messages)
        except RepositoryError as exc:
            raise RepositoryError(f"save messages error: {exc}") from exc

        logger.info(
            "messages saved to DB",
            extra=_extra(file=file_name, messages=len(result.messages)),
        )

        for unit_guid in dict.fromkeys(msg.unit_guid for msg in result.messages):
            try:
                messages = self._repo.get_all_messages_by_unit_guid(unit_guid)
            except RepositoryError as exc:
                logger.error(
                    "failed to get messages for device",
                    extra=_extra(unit_guid=unit_guid, error=str(exc)),
                )
                continue

            output_path = os.path.join(self._config.application.output, f"{unit_guid}.pdf")
            try:
                generate_pdf(unit_guid, messages, output_path)
            except (OSError, ValueError, RuntimeError) as exc:
                logger.error(
                    "failed to generate PDF",
                    extra=_extra(unit_guid=unit_guid, error=str(exc)),
                )
                continue

            logger.info(
                "PDF generated/updated",
                extra=_extra(unit_guid=unit_guid, messages=len(messages), path=output_path),
            )


_MM_PER_INCH = 25.4
_PAGE_WIDTH = 210.0
_PAGE_HEIGHT = 297.0
_MARGIN = 10.0
_BOTTOM_MARGIN = 20.0
_CELL_PADDING = 1.0
_FONT_FAMILY = "DejaVu Sans"


class _Document:
    """A4 portrait pages laid out with a cursor, in millimetres."""

    def __init__(self) -> None:
        self._pages: list[Figure] = []
        self._font: dict[str, Any] = {"size": 12, "weight": "normal", "style": "normal"}
        self._x = _MARGIN
        self._y = _MARGIN
        self._last_height = 0.0
        self.add_page()

    def add_page(self) -> None:
        self._pages.append(
            Figure(figsize=(_PAGE_WIDTH / _MM_PER_INCH, _PAGE_HEIGHT / _MM_PER_INCH))
        )
        self._x = _MARGIN
        self._y = _MARGIN

    def set_font(self, size: float, *, bold: bool = False, italic: bool = False) -> None:
        self._font = {
            "size": size,
            "weight": "bold" if bold else "normal",
            "style": "italic" if italic else "normal",
        }

    def cell(
        self, width: float, height: float, text: str, *, border: bool = False, align: str = "L"
    ) -> None:
        if self._y + height > _PAGE_HEIGHT - _BOTTOM_MARGIN:
            x = self._x
            self.add_page()
            self._x = x
        if width == 0:
            width = _PAGE_WIDTH - _MARGIN - self._x

        page = self._pages[-1]
        if border:
            page.add_artist(
                Rectangle(
                    (self._x / _PAGE_WIDTH, 1 - (self._y + height) / _PAGE_HEIGHT),
                    width / _PAGE_WIDTH,
                    height / _PAGE_HEIGHT,
                    transform=page.transFigure,
                    fill=False,
                    linewidth=0.5,
                )
            )
        if text:
            if align == "C":
                text_x, anchor = self._x + width / 2, "center"
            else:
                text_x, anchor = self._x + _CELL_PADDING, "left"
            page.text(
                text_x / _PAGE_WIDTH,
                1 - (self._y + height / 2) / _PAGE_HEIGHT,
                text,
                ha=anchor,
                va="center",
                family=_FONT_FAMILY,
                parse_math=False,
                **self._font,
            )
        self._x += width
        self._last_height = height

    def ln(self, height: float | None = None) -> None:
        self._x = _MARGIN
        self._y += self._last_height if height is None else height

    def save(self, path: str) -> None:
        with PdfPages(path) as pdf:
            for page in self._pages:
                pdf.savefig(page)


def _truncate(text: str, limit: int, keep: int) -> str:
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:keep].decode("utf-8", errors="ignore") + "..."


def generate_pdf(
    unit_guid: str, messages: Sequence[DeviceMessage], output_path: str | os.PathLike[str]
) -> None:
    """Write a PDF report of a device's messages to ``output_path``."""
    doc = _Document()

    doc.set_font(16, bold=True)
    doc.cell(0, 10, "Отчет по устройству")
    doc.ln(15)

    doc.set_font(11)
    doc.cell(0, 7, "Unit GUID: " + unit_guid)
    doc.ln(8)

    if messages:
        doc.cell(0, 7, "Инвентарный номер: " + messages[0].invid)
        doc.ln(8)

    doc.cell(0, 7, f"Всего сообщений: {len(messages)}")
    doc.ln(8)

    doc.cell(0, 7, "Дата отчета: " + datetime.now().strftime("%d.%m.%Y %H:%M:%S"))
    doc.ln(15)

    columns = (("№", 15), ("Сообщение", 70), ("Класс", 30), ("Уровень", 20), ("Адрес", 55))
    doc.set_font(10, bold=True)
    for title, width in columns:
        doc.cell(width, 7, title, border=True, align="C")
    doc.ln()

    doc.set_font(9)
    for index, msg in enumerate(messages):
        if index >= MAX_REPORT_ROWS:
            doc.set_font(9, italic=True)
            doc.cell(0, 7, f"... и еще {len(messages) - MAX_REPORT_ROWS} сообщений")
            break
        doc.cell(15, 7, str(index + 1), border=True, align="C")
        doc.cell(70, 7, _truncate(msg.message_text, 30, 27), border=True)
        doc.cell(30, 7, msg.message_class, border=True)
        doc.cell(20, 7, str(msg.level), border=True, align="C")
        doc.cell(55, 7, _truncate(msg.address, 25, 22), border=True)
        doc.ln()

    doc.save(os.fspath(output_path))