import os
import threading
import time
from datetime import timedelta
from unittest.mock import call, patch

import pytest
from sqlalchemy import create_engine

from devreports.config import ApplicationConfig, Config
from devreports.models import DeviceMessage, FileStatus
from devreports.parser import ParseError
from devreports.repository import Repository, RepositoryError
from devreports.scanner import Scanner, generate_pdf

GUID_A = "00000000-0000-0000-0000-00000000000a"
GUID_B = "00000000-0000-0000-0000-00000000000b"

HEADER = [
    "#номер", "mqtt", "инвентарный", "гуид", "id сообщения", "текст сообщения",
    "среда", "классс сообщения", "уровень сообщения", "Зона переменных", "адрес переменной",
]
COLUMNS = [
    "n ", "mqtt", "invid   ", "unit_guid   ", "msg_id   ", "text   ",
    "context", "class  ", "level", "area ", "addr   ",
]
ROWS = [
    ["1 ", "    ", "INV-0001", GUID_A, "cold7_Defrost_status     ", "Разморозка         ",
     "       ", "waiting", "100  ", "LOCAL", "cold7_status.Defrost_status"],
    ["2 ", "    ", "INV-0001", GUID_A, "cold7_VentSK_status      ", "Вентилятор         ",
     "       ", "working", "100  ", "LOCAL", "cold7_status.VentSK_status"],
    ["3 ", "    ", "INV-0002", GUID_B, "cold78_Defrost_status    ", "Разморозка         ",
     "       ", "waiting", "100  ", "LOCAL", "cold78_status.Defrost_status"],
]


def write_tsv(path, rows=ROWS):
    lines = ["\t".join(row) for row in [HEADER, COLUMNS, *rows]]
    path.write_text("\n".join(lines), encoding="utf-8")


@pytest.fixture
def repo(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'db.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    repository = Repository(engine)
    repository.migrate()
    yield repository
    repository.close()


def make_config(tmp_path, **overrides):
    input_dir = tmp_path / "input"
    output_dir = tmp_path / "output"
    input_dir.mkdir(exist_ok=True)
    output_dir.mkdir(exist_ok=True)
    settings = {
        "input": str(input_dir),
        "output": str(output_dir),
        "period": timedelta(seconds=0.05),
        "queue_size": 10,
        "workers": 1,
        "max_retries": 1,
    }
    settings.update(overrides)
    return Config(application=ApplicationConfig(**settings))


def drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def run_worker(scanner, file_path):
    stop = threading.Event()
    scanner.queue.put(file_path)
    thread = threading.Thread(target=scanner.worker, args=(stop, 0))
    thread.start()
    scanner.queue.join()
    stop.set()
    thread.join(timeout=10)


def statuses(repo):
    return {f.file_name: f for f in repo.get_all_processed_files()}


class FailingRepo:
    def get_all_processed_files(self):
        raise RepositoryError("database down")


def test_scan_queues_new_and_failed_files(tmp_path, repo):
    config = make_config(tmp_path)
    input_dir = tmp_path / "input"
    for name in ("a.tsv", "b.tsv", "c.tsv", "d.txt"):
        (input_dir / name).write_text("x", encoding="utf-8")
    (input_dir / "sub.tsv").mkdir()
    repo.update_file_status("b.tsv", FileStatus.PROCESSED.value, "")
    repo.update_file_status("c.tsv", FileStatus.ERROR.value, "bad")

    scanner = Scanner(config, repo)
    scanner.scan()

    assert drain(scanner.queue) == [
        os.path.join(config.application.input, "a.tsv"),
        os.path.join(config.application.input, "c.tsv"),
    ]


def test_scan_skips_files_when_queue_is_full(tmp_path, repo):
    config = make_config(tmp_path, queue_size=1)
    for name in ("a.tsv", "b.tsv"):
        (tmp_path / "input" / name).write_text("x", encoding="utf-8")

    scanner = Scanner(config, repo)
    scanner.scan()

    assert drain(scanner.queue) == [os.path.join(config.application.input, "a.tsv")]


def test_scan_of_missing_directory_queues_nothing(tmp_path, repo):
    config = make_config(tmp_path, input=str(tmp_path / "missing"))
    scanner = Scanner(config, repo)
    scanner.scan()
    assert scanner.queue.empty()


def test_scan_with_failing_repository_queues_nothing(tmp_path):
    config = make_config(tmp_path)
    (tmp_path / "input" / "a.tsv").write_text("x", encoding="utf-8")
    scanner = Scanner(config, FailingRepo())
    scanner.scan()
    assert scanner.queue.empty()


def test_start_processes_files_end_to_end(tmp_path, repo):
    config = make_config(tmp_path, workers=2)
    write_tsv(tmp_path / "input" / "test.tsv")
    scanner = Scanner(config, repo)
    stop = threading.Event()
    thread = threading.Thread(target=scanner.start, args=(stop,))
    thread.start()
    try:
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            record = statuses(repo).get("test.tsv")
            if record is not None and record.status == FileStatus.PROCESSED:
                break
            time.sleep(0.05)
    finally:
        stop.set()
        thread.join(timeout=30)

    assert not thread.is_alive()
    assert repo.is_file_processed("test.tsv")
    assert statuses(repo)["test.tsv"].status == "processed"
    assert len(repo.get_all_messages_by_unit_guid(GUID_A)) == 2
    assert len(repo.get_all_messages_by_unit_guid(GUID_B)) == 1
    pdfs = sorted(p.name for p in (tmp_path / "output").glob("*.pdf"))
    assert pdfs == [f"{GUID_A}.pdf", f"{GUID_B}.pdf"]


def test_start_rejects_non_positive_period(tmp_path, repo):
    config = make_config(tmp_path, period=timedelta(0))
    with pytest.raises(ValueError):
        Scanner(config, repo).start(threading.Event())


def test_worker_marks_success(tmp_path, repo):
    config = make_config(tmp_path)
    path = tmp_path / "input" / "ok.tsv"
    write_tsv(path)
    run_worker(Scanner(config, repo), str(path))

    record = statuses(repo)["ok.tsv"]
    assert record.status == "processed"
    assert record.error_message == ""


def test_worker_marks_error_after_retries(tmp_path, repo):
    config = make_config(tmp_path)
    path = tmp_path / "input" / "short.tsv"
    path.write_text("\t".join(HEADER), encoding="utf-8")
    run_worker(Scanner(config, repo), str(path))

    record = statuses(repo)["short.tsv"]
    assert record.status == "error"
    assert record.error_message.startswith("parse error:")
    assert "file too short" in record.error_message


def test_worker_waits_between_attempts(tmp_path, repo):
    config = make_config(tmp_path, max_retries=2)
    path = tmp_path / "input" / "missing.tsv"
    with patch("time.sleep") as sleep:
        run_worker(Scanner(config, repo), str(path))

    assert call(2) in sleep.call_args_list
    assert statuses(repo)["missing.tsv"].status == "error"


def test_process_file_saves_messages_and_reports(tmp_path, repo):
    config = make_config(tmp_path)
    path = tmp_path / "input" / "data.tsv"
    write_tsv(path)
    Scanner(config, repo).process_file(str(path), "data.tsv")

    messages = repo.get_all_messages_by_unit_guid(GUID_A)
    assert sorted(m.message_id for m in messages) == [
        "cold7_Defrost_status",
        "cold7_VentSK_status",
    ]
    report = tmp_path / "output" / f"{GUID_A}.pdf"
    assert report.read_bytes().startswith(b"%PDF")


def test_process_file_rejects_bad_file(tmp_path, repo):
    config = make_config(tmp_path)
    with pytest.raises(ParseError, match="parse error"):
        Scanner(config, repo).process_file(str(tmp_path / "input" / "nope.tsv"), "nope.tsv")


def test_process_file_survives_report_failure(tmp_path, repo):
    config = make_config(tmp_path, output=str(tmp_path / "no-such-dir"))
    path = tmp_path / "input" / "data.tsv"
    write_tsv(path)
    Scanner(config, repo).process_file(str(path), "data.tsv")

    assert len(repo.get_all_messages_by_unit_guid(GUID_B)) == 1
    assert not (tmp_path / "no-such-dir").exists()


def test_generate_pdf_writes_pdf(tmp_path):
    messages = [
        DeviceMessage(number=n, invid="INV-0001", unit_guid=GUID_A,
                      message_text="Очень длинный текст сообщения для отчета",
                      message_class="alarm", level=n, address="a" * 40)
        for n in range(1, 41)
    ]
    output = tmp_path / "report.pdf"
    generate_pdf(GUID_A, messages, output)
    assert output.read_bytes().startswith(b"%PDF")


def test_generate_pdf_without_messages(tmp_path):
    output = tmp_path / "empty.pdf"
    generate_pdf(GUID_A, [], output)
    assert output.read_bytes().startswith(b"%PDF")


def test_generate_pdf_into_missing_directory_fails(tmp_path):
    with pytest.raises(OSError):
        generate_pdf(GUID_A, [], tmp_path / "missing" / "report.pdf")