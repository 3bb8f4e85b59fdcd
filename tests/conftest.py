# pylint: disable=redefined-outer-name
from datetime import datetime, timedelta, timezone

import pytest

from bloodbank.adapters import audit, donor_locator, notifications, repository
from bloodbank.domain import actors
from bloodbank.domain.actors import Actor
from bloodbank.domain.blood_request import PENDING, BloodRequest
from bloodbank.domain.donation import Donation
from bloodbank.domain.users import UserAccount
from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork

NOW = datetime(2030, 1, 15, 12, 0, tzinfo=timezone.utc)

# Lagos, Nigeria
HOSPITAL_LON, HOSPITAL_LAT = 3.3792, 6.5244


class FakeRequestRepository(repository.AbstractRequestRepository):
    def __init__(self, requests=()):
        super().__init__()
        self._requests = {r.request_id: r for r in requests}

    def _add(self, request):
        self._requests[request.request_id] = request

    def _get(self, request_id, for_update):
        return self._requests.get(request_id)

    def _list_stale_pending(self, now):
        return [
            r for r in self._requests.values()
            if r.status == PENDING and (r.expires_at < now or r.required_by < now)
        ]

    def _list(self, status, blood_type, limit, offset):
        found = [
            r for r in self._requests.values()
            if (not status or r.status == status) and (not blood_type or r.blood_type == blood_type)
        ]
        return found[offset:offset + limit]

    def donor_responded_to_requester(self, requester_id, donor_id):
        return any(
            r.requester_id == requester_id and r.find_match(donor_id) is not None for r in self._requests.values()
        )


class FakeDonationRepository(repository.AbstractDonationRepository):
    def __init__(self, records=()):
        super().__init__()
        self._records = {d.donation_id: d for d in records}

    def _add(self, record):
        self._records[record.donation_id] = record

    def _get(self, donation_id, for_update):
        return self._records.get(donation_id)


class FakeUserRepository(repository.AbstractUserRepository):
    def __init__(self, users=()):
        self._users = {u.user_id: u for u in users}

    def add(self, user):
        self._users[user.user_id] = user

    def get(self, user_id):
        return self._users.get(user_id)

    def list_active_staff_ids(self):
        return sorted(u.user_id for u in self._users.values() if u.is_staff and u.is_active)

    def record_donation(self, donor_id, units, donated_at):
        user = self._users[donor_id]
        user.total_donations += 1
        user.total_units += units
        if user.last_donation_at is None or user.last_donation_at < donated_at:
            user.last_donation_at = donated_at

    def add_lives_saved(self, donor_id, units):
        self._users[donor_id].lives_saved += units

    def add_rating(self, donor_id, rating):
        user = self._users[donor_id]
        user.rating_total += rating
        user.rating_count += 1


class FakeDonorLocator(donor_locator.AbstractDonorLocator):
    def __init__(self, donors=(), fail=False):
        self.donors = list(donors)
        self.fail = fail
        self.calls = []

    def find_nearby(self, point, radius_meters, blood_types, limit=None, exclude_ids=()):
        self.calls.append((point, radius_meters, set(blood_types), limit, set(exclude_ids)))
        if self.fail:
            raise donor_locator.DonorLocatorError("geo index unavailable")
        found = [d for d in self.donors if d.blood_type in blood_types and d.donor_id not in exclude_ids]
        found.sort(key=lambda d: d.distance_km)
        return found[:limit] if limit is not None else found


class FakeNotificationDispatcher(notifications.AbstractNotificationDispatcher):
    def __init__(self, failing_recipients=()):
        self.sent = []
        self.batches = []
        self.failing_recipients = set(failing_recipients)

    def send(self, notification):
        if notification.recipient_id in self.failing_recipients:
            raise ConnectionError(f"cannot reach {notification.recipient_id}")
        self.sent.append(notification)

    def send_batch(self, notifications):
        self.batches.append(list(notifications))

    def sent_to(self, recipient_id):
        return [n for n in self.sent if n.recipient_id == recipient_id]


class FakeAuditRecorder(audit.AbstractAuditRecorder):
    def __init__(self, fail=False):
        self.facts = []
        self.fail = fail

    def record(self, fact):
        if self.fail:
            raise ConnectionError("audit channel unavailable")
        self.facts.append(fact)

    @property
    def actions(self):
        return [f.action for f in self.facts]


class FakeUnitOfWork(AbstractUnitOfWork):
    def __init__(self, users=(), requests=(), donations=(), donors_nearby=()):
        self.requests = FakeRequestRepository(requests)
        self.donations = FakeDonationRepository(donations)
        self.users = FakeUserRepository(users)
        self.donor_locator = FakeDonorLocator(donors_nearby)
        self.notifications = FakeNotificationDispatcher()
        self.audit = FakeAuditRecorder()
        self.committed = False

    def _commit(self):
        self.committed = True

    def rollback(self):
        pass


def make_user(user_id="donor-1", role=actors.DONOR, **overrides):
    fields = dict(
        user_id=user_id,
        role=role,
        name=overrides.pop("name", f"User {user_id}"),
        email=f"{user_id}@example.org",
        phone="+2348000000000",
        blood_type="O-",
        latitude=HOSPITAL_LAT,
        longitude=HOSPITAL_LON,
    )
    fields.update(overrides)
    return UserAccount(**fields)


def actor_for(user: UserAccount) -> Actor:
    return Actor(user_id=user.user_id, role=user.role)


def request_details(**overrides):
    details = dict(
        patient_name="Jane Doe",
        patient_age=34,
        patient_gender="female",
        patient_blood_type="O-",
        blood_type="O-",
        blood_product="whole_blood",
        units=2,
        urgency="high",
        medical_reason="accident",
        hospital_name="City General Hospital",
        required_by=NOW + timedelta(days=2),
        longitude=HOSPITAL_LON,
        latitude=HOSPITAL_LAT,
        city="Lagos",
        state="Lagos",
    )
    details.update(overrides)
    return details


def make_request(requester=None, request_id="req-1", now=NOW, expiry_days=7, **overrides) -> BloodRequest:
    """A created request with its RequestCreated event already drained."""
    requester = requester or make_user("recipient-1", role=actors.RECIPIENT)
    request = BloodRequest.for_requester(request_id, requester, now, expiry_days, **request_details(**overrides))
    request.create(actor_for(requester), now)
    request.events.clear()
    return request


def make_donation(donor=None, donation_id="don-1", now=NOW, **overrides) -> Donation:
    donor = donor or make_user()
    details = dict(
        donation_type="whole_blood",
        units=1,
        scheduled_at=now + timedelta(days=1),
        collection_site="Central Blood Bank, Ward 3",
    )
    details.update(overrides)
    record = Donation.for_donor(donation_id, donor, now, **details)
    record.schedule(actor_for(donor), now)
    record.events.clear()
    return record


@pytest.fixture
def staff():
    return make_user("staff-1", role=actors.MEDICAL_ADMIN, blood_type=None)


@pytest.fixture
def staff_actor(staff):
    return actor_for(staff)


@pytest.fixture
def recipient():
    return make_user("recipient-1", role=actors.RECIPIENT, blood_type="O-")


@pytest.fixture
def donor():
    return make_user("donor-1")


@pytest.fixture
def sqlite_session_factory():
    """Create SQLite in-memory database for fast testing."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker, clear_mappers
    from sqlalchemy.pool import StaticPool
    from bloodbank.adapters import orm

    # one shared connection so API worker threads see the same database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def sqlite_uow_factory(sqlite_session_factory):
    """Real unit of work on SQLite with fake outbound collaborators."""
    from bloodbank.service_layer.unit_of_work import SqlAlchemyUnitOfWork

    dispatcher = FakeNotificationDispatcher()
    recorder = FakeAuditRecorder()

    def _make():
        return SqlAlchemyUnitOfWork(sqlite_session_factory, notifications_impl=dispatcher, audit_impl=recorder)

    _make.notifications = dispatcher
    _make.audit = recorder
    return _make
