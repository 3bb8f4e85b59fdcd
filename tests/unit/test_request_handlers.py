# pylint: disable=redefined-outer-name
from datetime import timedelta

import pytest

from conftest import (
    HOSPITAL_LAT,
    HOSPITAL_LON,
    NOW,
    FakeUnitOfWork,
    actor_for,
    make_request,
    make_user,
)
from bloodbank.adapters import notifications
from bloodbank.domain import actors, commands
from bloodbank.domain.blood_request import CANCELLED, CONFIRMED, EXPIRED, MATCHED, PENDING
from bloodbank.domain.clock import utcnow
from bloodbank.domain.exceptions import (
    AuthorizationError,
    DuplicateResponseError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from bloodbank.domain.users import DonorSummary
from bloodbank.service_layer import messagebus


def nearby(donor_id, blood_type="O-", distance_km=1.0):
    return DonorSummary(
        donor_id=donor_id, name=f"Donor {donor_id}", phone="+2348000000001",
        blood_type=blood_type, distance_km=distance_km,
    )


def create_command(actor, **overrides):
    fields = dict(
        actor=actor,
        patient_name="Jane Doe",
        patient_age=34,
        patient_gender="female",
        patient_blood_type="A+",
        blood_type="A+",
        blood_product="whole_blood",
        units=2,
        urgency="high",
        medical_reason="surgery",
        hospital_name="City General Hospital",
        required_by=NOW,
        longitude=HOSPITAL_LON,
        latitude=HOSPITAL_LAT,
        city="Lagos",
        state="Lagos",
    )
    fields.update(overrides)
    return commands.CreateBloodRequest(**fields)


@pytest.fixture
def recipient():
    return make_user("recipient-1", role=actors.RECIPIENT, blood_type="A+")


class TestCreateBloodRequest:
    def test_request_is_stored_and_committed(self, recipient):
        uow = FakeUnitOfWork(users=[recipient])

        [request_id] = messagebus.handle(create_command(actor_for(recipient)), uow)

        request = uow.requests.get(request_id)
        assert request.status == PENDING
        assert request.requester_id == recipient.user_id
        assert uow.committed

    def test_compatible_nearby_donors_are_notified(self, recipient):
        uow = FakeUnitOfWork(
            users=[recipient],
            donors_nearby=[nearby("d-1", "O-"), nearby("d-2", "A+", 2.5), nearby("d-3", "B+")],
        )

        [request_id] = messagebus.handle(create_command(actor_for(recipient)), uow)

        assert {n.recipient_id for n in uow.notifications.sent} == {"d-1", "d-2"}
        notice = uow.notifications.sent_to("d-2")[0]
        assert notice.type == notifications.BLOOD_REQUEST
        assert notice.related_id == request_id
        assert notice.metadata["distance_km"] == 2.5
        [(_, radius, blood_types, limit, excluded)] = uow.donor_locator.calls
        assert blood_types == {"A+", "A-", "O+", "O-"}
        assert radius == 50000
        assert limit == 20
        assert excluded == {recipient.user_id}

    def test_fan_out_respects_the_configured_cap(self, recipient, monkeypatch):
        monkeypatch.setenv("MATCH_MAX_DONORS", "2")
        uow = FakeUnitOfWork(
            users=[recipient],
            donors_nearby=[nearby(f"d-{i}", distance_km=float(i)) for i in range(5)],
        )

        messagebus.handle(create_command(actor_for(recipient)), uow)

        assert [n.recipient_id for n in uow.notifications.sent] == ["d-0", "d-1"]

    def test_requester_is_not_matched_to_their_own_request(self):
        requester = make_user("donor-9", role=actors.DONOR, blood_type="A+")
        uow = FakeUnitOfWork(users=[requester], donors_nearby=[nearby("donor-9"), nearby("d-1")])

        messagebus.handle(create_command(actor_for(requester)), uow)

        assert [n.recipient_id for n in uow.notifications.sent] == ["d-1"]

    def test_requester_does_not_use_up_a_place_under_the_cap(self, monkeypatch):
        monkeypatch.setenv("MATCH_MAX_DONORS", "2")
        requester = make_user("donor-9", role=actors.DONOR, blood_type="A+")
        uow = FakeUnitOfWork(
            users=[requester],
            donors_nearby=[nearby("donor-9", distance_km=0.1), nearby("d-1"), nearby("d-2", distance_km=2.0)],
        )

        messagebus.handle(create_command(actor_for(requester)), uow)

        assert [n.recipient_id for n in uow.notifications.sent] == ["d-1", "d-2"]

    def test_one_failed_notification_does_not_stop_the_others(self, recipient):
        uow = FakeUnitOfWork(users=[recipient], donors_nearby=[nearby("d-1"), nearby("d-2", distance_km=3.0)])
        uow.notifications.failing_recipients = {"d-1"}

        [request_id] = messagebus.handle(create_command(actor_for(recipient)), uow)

        assert [n.recipient_id for n in uow.notifications.sent] == ["d-2"]
        assert uow.requests.get(request_id).status == PENDING

    def test_locator_failure_leaves_request_unmatched(self, recipient):
        uow = FakeUnitOfWork(users=[recipient], donors_nearby=[nearby("d-1")])
        uow.donor_locator.fail = True

        [request_id] = messagebus.handle(create_command(actor_for(recipient)), uow)

        assert uow.requests.get(request_id).status == PENDING
        assert uow.notifications.sent == []

    def test_audit_failure_does_not_fail_the_request(self, recipient, caplog):
        uow = FakeUnitOfWork(users=[recipient], donors_nearby=[nearby("d-1")])
        uow.audit.fail = True

        [request_id] = messagebus.handle(create_command(actor_for(recipient)), uow)

        assert uow.committed
        assert uow.requests.get(request_id).status == PENDING
        assert [n.recipient_id for n in uow.notifications.sent] == ["d-1"]
        assert uow.audit.facts == []
        assert "Exception handling event" in caplog.text

    def test_staff_get_one_batch(self, recipient):
        staff = [make_user("staff-1", role=actors.MEDICAL_ADMIN), make_user("staff-2", role=actors.SYSTEM_ADMIN)]
        uow = FakeUnitOfWork(users=[recipient, *staff])

        messagebus.handle(create_command(actor_for(recipient), urgency="critical"), uow)

        [batch] = uow.notifications.batches
        assert [n.recipient_id for n in batch] == ["staff-1", "staff-2"]
        assert all(n.type == notifications.EMERGENCY_ALERT for n in batch)
        assert all(n.is_urgent for n in batch)

    def test_creation_is_audited(self, recipient):
        uow = FakeUnitOfWork(users=[recipient])
        messagebus.handle(create_command(actor_for(recipient)), uow)
        assert uow.audit.actions == ["blood_request_create"]

    def test_invalid_request_is_not_stored(self, recipient):
        uow = FakeUnitOfWork(users=[recipient], donors_nearby=[nearby("d-1")])

        with pytest.raises(ValidationError):
            messagebus.handle(create_command(actor_for(recipient), units=11), uow)

        assert uow.requests.list() == []
        assert uow.notifications.sent == []
        assert not uow.committed

    def test_unknown_requester(self, recipient):
        uow = FakeUnitOfWork()
        with pytest.raises(NotFoundError):
            messagebus.handle(create_command(actor_for(recipient)), uow)


class TestRespondToRequest:
    def test_accept_matches_and_notifies_requester(self, donor):
        request = make_request()
        uow = FakeUnitOfWork(users=[donor], requests=[request])

        [status] = messagebus.handle(
            commands.RespondToRequest(actor=actor_for(donor), request_id="req-1", response="accept"), uow
        )

        assert status == "accepted"
        assert request.status == MATCHED
        [notice] = uow.notifications.sent
        assert notice.recipient_id == request.requester_id
        assert notice.type == notifications.DONATION_MATCH
        assert uow.audit.actions == ["blood_request_match"]

    def test_decline_is_recorded_without_notifying_requester(self, donor):
        request = make_request()
        uow = FakeUnitOfWork(users=[donor], requests=[request])

        [status] = messagebus.handle(
            commands.RespondToRequest(actor=actor_for(donor), request_id="req-1", response="decline"), uow
        )

        assert status == "declined"
        assert request.status == PENDING
        assert uow.notifications.sent == []
        assert uow.audit.actions == ["blood_request_decline"]

    def test_duplicate_response(self, donor):
        request = make_request()
        uow = FakeUnitOfWork(users=[donor], requests=[request])
        respond = commands.RespondToRequest(actor=actor_for(donor), request_id="req-1", response="accept")
        messagebus.handle(respond, uow)

        with pytest.raises(DuplicateResponseError):
            messagebus.handle(respond, uow)
        assert len(request.matched_donors) == 1

    def test_recent_donor_cannot_accept(self):
        donor = make_user(last_donation_at=utcnow() - timedelta(days=10))
        request = make_request()
        uow = FakeUnitOfWork(users=[donor], requests=[request])

        with pytest.raises(ValidationError, match="56 days"):
            messagebus.handle(
                commands.RespondToRequest(actor=actor_for(donor), request_id="req-1", response="accept"), uow
            )
        assert request.matched_donors == []

    def test_unknown_request(self, donor):
        uow = FakeUnitOfWork(users=[donor])
        with pytest.raises(NotFoundError):
            messagebus.handle(
                commands.RespondToRequest(actor=actor_for(donor), request_id="nope", response="accept"), uow
            )


def test_confirm_donor_notifies_the_donor(recipient, donor):
    request = make_request(requester=recipient)
    request.respond(donor, actor_for(donor), "accept", NOW)
    request.events.clear()
    uow = FakeUnitOfWork(users=[recipient, donor], requests=[request])

    [status] = messagebus.handle(
        commands.ConfirmDonor(
            actor=actor_for(recipient),
            request_id="req-1",
            donor_id=donor.user_id,
            donation_date=NOW,
            donation_time="09:30",
            donation_location="City General Hospital",
        ),
        uow,
    )

    assert status == CONFIRMED
    [notice] = uow.notifications.sent
    assert notice.recipient_id == donor.user_id
    assert notice.type == notifications.DONATION_CONFIRMED
    assert notice.metadata["donation_time"] == "09:30"


def test_cancel_notifies_every_responding_donor(recipient):
    request = make_request(requester=recipient)
    responders = [make_user("donor-1"), make_user("donor-2")]
    request.respond(responders[0], actor_for(responders[0]), "accept", NOW)
    request.respond(responders[1], actor_for(responders[1]), "decline", NOW)
    request.events.clear()
    uow = FakeUnitOfWork(users=[recipient, *responders], requests=[request])
    uow.notifications.failing_recipients = {"donor-1"}

    [status] = messagebus.handle(
        commands.CancelRequest(actor=actor_for(recipient), request_id="req-1", reason="Patient transferred"), uow
    )

    assert status == CANCELLED
    assert [n.recipient_id for n in uow.notifications.sent] == ["donor-2"]
    assert uow.audit.actions == ["blood_request_cancel"]


def test_complete_request(recipient):
    request = make_request(requester=recipient)
    uow = FakeUnitOfWork(users=[recipient], requests=[request])

    [status] = messagebus.handle(
        commands.CompleteRequest(actor=actor_for(recipient), request_id="req-1", actual_units=2), uow
    )

    assert status == "completed"
    assert uow.audit.actions == ["blood_request_complete"]


def test_update_by_staff_moves_status(staff):
    request = make_request()
    uow = FakeUnitOfWork(users=[staff], requests=[request])

    [status] = messagebus.handle(
        commands.UpdateBloodRequest(actor=actor_for(staff), request_id="req-1", status="fulfilled"), uow
    )

    assert status == "fulfilled"
    assert uow.audit.actions == ["blood_request_status_change"]


def test_non_owner_update_is_rejected(donor):
    request = make_request()
    uow = FakeUnitOfWork(users=[donor], requests=[request])
    with pytest.raises(AuthorizationError):
        messagebus.handle(
            commands.UpdateBloodRequest(actor=actor_for(donor), request_id="req-1", urgency="low"), uow
        )
    assert uow.audit.facts == []


class TestExpiry:
    def overdue_request(self, requester):
        created = utcnow() - timedelta(days=10)
        return make_request(requester=requester, now=created, required_by=created + timedelta(days=2))

    def test_expiry_found_on_load_survives_a_rejected_command(self, recipient, donor):
        request = self.overdue_request(recipient)
        uow = FakeUnitOfWork(users=[recipient, donor], requests=[request])

        with pytest.raises(IllegalTransitionError):
            messagebus.handle(
                commands.RespondToRequest(actor=actor_for(donor), request_id="req-1", response="accept"), uow
            )

        assert request.status == EXPIRED
        assert uow.committed
        assert uow.audit.actions == ["blood_request_expire"]
        [notice] = uow.notifications.sent
        assert notice.recipient_id == recipient.user_id
        assert notice.title == "Blood Request Expired"

    def test_sweep_expires_only_overdue_pending_requests(self, recipient):
        overdue = self.overdue_request(recipient)
        fresh = make_request(requester=recipient, request_id="req-2")
        uow = FakeUnitOfWork(users=[recipient], requests=[overdue, fresh])

        [expired] = messagebus.handle(commands.ExpireStaleRequests(), uow)

        assert expired == ["req-1"]
        assert overdue.status == EXPIRED
        assert fresh.status == PENDING
        assert uow.audit.actions == ["blood_request_expire"]

    def test_sweep_with_explicit_clock(self, recipient):
        request = make_request(requester=recipient)
        uow = FakeUnitOfWork(users=[recipient], requests=[request])

        [expired] = messagebus.handle(commands.ExpireStaleRequests(now=NOW + timedelta(days=8)), uow)

        assert expired == ["req-1"]
