# pylint: disable=redefined-outer-name
from datetime import timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from conftest import NOW, actor_for, make_donation, make_request, make_user
from bloodbank.domain.blood_request import BloodRequest
from bloodbank.domain.donation import Donation, Vitals
from bloodbank.domain.users import UserAccount


@pytest.fixture
def session(sqlite_session_factory):
    session = sqlite_session_factory()
    yield session
    session.close()


def test_request_round_trip_keeps_matched_donors(session, donor):
    request = make_request()
    request.respond(donor, actor_for(donor), "accept", NOW)
    session.add(request)
    session.commit()
    session.expunge_all()

    loaded = session.get(BloodRequest, "req-1")

    assert loaded.status == "matched"
    assert [m.donor_id for m in loaded.matched_donors] == [donor.user_id]
    assert loaded.events == []


def test_datetimes_come_back_timezone_aware(session):
    session.add(make_request())
    session.commit()
    session.expunge_all()

    loaded = session.get(BloodRequest, "req-1")

    assert loaded.created_at == NOW
    assert loaded.required_by.tzinfo is not None
    assert loaded.expires_at.utcoffset() == timedelta(0)


def test_naive_datetimes_are_stored_as_utc(session):
    session.add(make_request(required_by=(NOW + timedelta(days=3)).replace(tzinfo=None)))
    session.commit()
    session.expunge_all()

    loaded = session.get(BloodRequest, "req-1")
    assert loaded.required_by == (NOW + timedelta(days=3)).astimezone(timezone.utc)


def test_same_donor_twice_violates_the_composite_key(session, donor):
    request = make_request()
    request.respond(donor, actor_for(donor), "accept", NOW)
    session.add(request)
    session.commit()

    with pytest.raises(IntegrityError):
        session.execute(
            text(
                "INSERT INTO matched_donors (request_id, donor_id, donor_name, status, matched_at) "
                "VALUES ('req-1', :donor_id, 'Donor', 'declined', '2030-01-15 12:05:00')"
            ),
            {"donor_id": donor.user_id},
        )


def test_donation_sub_records_round_trip(session, staff_actor):
    record = make_donation()
    record.start(
        staff_actor, "phleb-1", "Central Blood Bank",
        Vitals(systolic=120, diastolic=80, heart_rate=70, temperature=36.7, hemoglobin=13.8, weight=68),
        True, NOW,
    )
    record.collection.complications = ["bruising"]
    record.complete(staff_actor, NOW + timedelta(minutes=9))
    record.record_post_donation_care(staff_actor, NOW + timedelta(minutes=30), symptoms=["dizziness"])
    session.add(record)
    session.commit()
    session.expunge_all()

    loaded = session.get(Donation, "don-1")

    assert loaded.status == "completed"
    assert loaded.health_check.hemoglobin == 13.8
    assert loaded.collection.duration_minutes == 9
    assert loaded.collection.complications == ["bruising"]
    assert loaded.post_care.symptoms == ["dizziness"]
    assert loaded.testing is None
    assert loaded.events == []



def test_recipient_responses_and_review_round_trip(session, recipient, staff_actor):
    record = make_donation()
    record.record_recipient_response(actor_for(recipient), "decline", NOW, associated=True, notes="Already transfused")
    record.set_recipient_review(staff_actor, "declined", NOW + timedelta(hours=1))
    session.add(record)
    session.commit()
    session.expunge_all()

    loaded = session.get(Donation, "don-1")

    [entry] = loaded.recipient_responses
    assert (entry.recipient_id, entry.response, entry.notes) == ("recipient-1", "declined", "Already transfused")
    assert entry.responded_at.tzinfo is not None
    assert loaded.review_status == "declined"
    assert loaded.recipient_review.decided_by == staff_actor.user_id

def test_users_are_mapped(session):
    session.add(make_user("donor-5", last_donation_at=NOW))
    session.commit()
    session.expunge_all()

    loaded = session.get(UserAccount, "donor-5")
    assert loaded.total_donations == 0
    assert loaded.last_donation_at == NOW
