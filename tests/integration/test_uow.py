# pylint: disable=redefined-outer-name
import pytest
from sqlalchemy import text

from conftest import NOW, actor_for, make_request
from bloodbank.domain import events


def insert_request(session_factory):
    session = session_factory()
    session.add(make_request())
    session.commit()
    session.close()


def test_uow_can_retrieve_a_request_and_save_a_response(sqlite_uow_factory, sqlite_session_factory, donor):
    insert_request(sqlite_session_factory)

    uow = sqlite_uow_factory()
    with uow:
        request = uow.requests.get("req-1", for_update=True)
        request.respond(donor, actor_for(donor), "accept", NOW)
        uow.commit()

    session = sqlite_session_factory()
    [[status]] = session.execute(text("SELECT status FROM blood_requests WHERE request_id = 'req-1'"))
    [[donor_id]] = session.execute(text("SELECT donor_id FROM matched_donors"))
    assert status == "matched"
    assert donor_id == donor.user_id


def test_rolls_back_uncommitted_work_by_default(sqlite_uow_factory, sqlite_session_factory):
    uow = sqlite_uow_factory()
    with uow:
        uow.requests.add(make_request())

    session = sqlite_session_factory()
    assert list(session.execute(text("SELECT * FROM blood_requests"))) == []


def test_rolls_back_on_error(sqlite_uow_factory, sqlite_session_factory):
    class MyException(Exception):
        pass

    uow = sqlite_uow_factory()
    with pytest.raises(MyException):
        with uow:
            uow.requests.add(make_request())
            raise MyException()

    session = sqlite_session_factory()
    assert list(session.execute(text("SELECT * FROM blood_requests"))) == []


def test_events_are_released_only_after_commit(sqlite_uow_factory, sqlite_session_factory, donor):
    insert_request(sqlite_session_factory)

    uow = sqlite_uow_factory()
    with uow:
        request = uow.requests.get("req-1")
        request.respond(donor, actor_for(donor), "accept", NOW)
        assert list(uow.collect_new_events()) == []
        uow.commit()

    [event] = list(uow.collect_new_events())
    assert isinstance(event, events.DonorResponded)
    assert list(uow.collect_new_events()) == []


def test_rolled_back_changes_raise_no_events(sqlite_uow_factory, sqlite_session_factory, donor):
    insert_request(sqlite_session_factory)

    uow = sqlite_uow_factory()
    with uow:
        request = uow.requests.get("req-1")
        request.respond(donor, actor_for(donor), "decline", NOW)

    assert list(uow.collect_new_events()) == []
