import pytest
from sqlalchemy import create_engine

from devreports.models import DeviceMessage
from devreports.repository import Repository, RepositoryError
from devreports.service import DeviceService

GUID_A = "00000000-0000-0000-0000-00000000000a"
GUID_B = "00000000-0000-0000-0000-00000000000b"


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


def _messages(unit_guid, count):
    return [
        DeviceMessage(number=n, invid="INV-0001", unit_guid=unit_guid, message_id=f"msg_{n}")
        for n in range(1, count + 1)
    ]


class RecordingRepo:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def get_messages_by_unit_guid_paginated(self, unit_guid, page, limit):
        self.calls.append((unit_guid, page, limit))
        if self.error is not None:
            raise self.error
        return self.result


def test_passes_arguments_and_result_through():
    messages = _messages(GUID_A, 1)
    repo = RecordingRepo(result=(messages, 7))
    service = DeviceService(repo)

    assert service.get_device_messages(GUID_A, 2, 5) == (messages, 7)
    assert repo.calls == [(GUID_A, 2, 5)]


def test_repository_errors_propagate():
    service = DeviceService(RecordingRepo(error=RepositoryError("boom")))
    with pytest.raises(RepositoryError, match="boom"):
        service.get_device_messages(GUID_A, 1, 10)


def test_pages_cover_all_messages_once(repo):
    saved = _messages(GUID_A, 3)
    repo.save_messages(saved)
    service = DeviceService(repo)

    first, total_first = service.get_device_messages(GUID_A, 1, 2)
    second, total_second = service.get_device_messages(GUID_A, 2, 2)

    assert total_first == total_second == len(saved)
    assert len(first) == 2
    ids = sorted(m.message_id for m in first + second)
    assert ids == sorted(m.message_id for m in saved)


def test_only_the_requested_device_is_returned(repo):
    repo.save_messages(_messages(GUID_A, 2) + _messages(GUID_B, 1))
    messages, total = DeviceService(repo).get_device_messages(GUID_B, 1, 10)

    assert total == 1
    assert [m.unit_guid for m in messages] == [GUID_B]


def test_out_of_range_limit_falls_back_to_default(repo):
    saved = _messages(GUID_A, 3)
    repo.save_messages(saved)
    messages, total = DeviceService(repo).get_device_messages(GUID_A, 0, 0)

    assert total == len(saved)
    assert len(messages) == len(saved)


def test_unknown_device_is_empty(repo):
    repo.save_messages(_messages(GUID_A, 1))
    assert DeviceService(repo).get_device_messages(GUID_B, 1, 10) == ([], 0)