import abc
import logging
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import case, literal, or_, select, update

from bloodbank.adapters import orm
from bloodbank.domain import actors
from bloodbank.domain.blood_request import PENDING, BloodRequest
from bloodbank.domain.donation import Donation
from bloodbank.domain.users import UserAccount

logger = logging.getLogger(__name__)


class AbstractRequestRepository(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[BloodRequest]

    def add(self, request: BloodRequest) -> str:
        self._add(request)
        self.seen.add(request)
        return request.request_id

    def get(self, request_id: str, for_update: bool = False) -> Optional[BloodRequest]:
        request = self._get(request_id, for_update)
        if request:
            self.seen.add(request)
        return request

    def list_stale_pending(self, now: datetime) -> List[BloodRequest]:
        """Pending requests whose expiry or deadline has passed."""
        requests = self._list_stale_pending(now)
        for request in requests:
            self.seen.add(request)
        return requests

    def list(
        self, status: Optional[str] = None, blood_type: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[BloodRequest]:
        requests = self._list(status, blood_type, limit, offset)
        for request in requests:
            self.seen.add(request)
        return requests

    @abc.abstractmethod
    def _add(self, request: BloodRequest):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, request_id: str, for_update: bool) -> Optional[BloodRequest]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_stale_pending(self, now: datetime) -> List[BloodRequest]:
        raise NotImplementedError

    @abc.abstractmethod
    def donor_responded_to_requester(self, requester_id: str, donor_id: str) -> bool:
        """Whether the donor is among the matched donors of any of the requester's requests."""
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, status, blood_type, limit, offset) -> List[BloodRequest]:
        raise NotImplementedError


class SqlAlchemyRequestRepository(AbstractRequestRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, request):
        self.session.add(request)

    def _get(self, request_id, for_update):
        stmt = select(BloodRequest).filter_by(request_id=request_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalars().first()

    def _list_stale_pending(self, now):
        stmt = (
            select(BloodRequest)
            .where(orm.blood_requests.c.status == PENDING)
            .where(or_(orm.blood_requests.c.expires_at < now, orm.blood_requests.c.required_by < now))
            .with_for_update(skip_locked=True)
        )
        return list(self.session.execute(stmt).scalars().all())

    def _list(self, status, blood_type, limit, offset):
        table = orm.blood_requests
        stmt = select(BloodRequest).order_by(table.c.is_emergency.desc(), table.c.created_at.desc())
        if status:
            stmt = stmt.where(table.c.status == status)
        if blood_type:
            stmt = stmt.where(table.c.blood_type == blood_type)
        return list(self.session.execute(stmt.limit(limit).offset(offset)).scalars().all())

    def donor_responded_to_requester(self, requester_id, donor_id):
        requests, matches = orm.blood_requests, orm.matched_donors
        stmt = (
            select(matches.c.donor_id)
            .join(requests, requests.c.request_id == matches.c.request_id)
            .where(requests.c.requester_id == requester_id)
            .where(matches.c.donor_id == donor_id)
            .limit(1)
        )
        return self.session.execute(stmt).first() is not None


class AbstractDonationRepository(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[Donation]

    def add(self, record: Donation) -> str:
        self._add(record)
        self.seen.add(record)
        return record.donation_id

    def get(self, donation_id: str, for_update: bool = False) -> Optional[Donation]:
        record = self._get(donation_id, for_update)
        if record:
            self.seen.add(record)
        return record

    @abc.abstractmethod
    def _add(self, record: Donation):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, donation_id: str, for_update: bool) -> Optional[Donation]:
        raise NotImplementedError


class SqlAlchemyDonationRepository(AbstractDonationRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, record):
        self.session.add(record)

    def _get(self, donation_id, for_update):
        stmt = select(Donation).filter_by(donation_id=donation_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalars().first()


class AbstractUserRepository(abc.ABC):
    """
    Accounts are owned by the user service; this side only reads them and
    bumps donor statistics.

    Statistics are always changed additively so that concurrent completions
    for the same donor never overwrite each other.
    """

    @abc.abstractmethod
    def add(self, user: UserAccount):
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, user_id: str) -> Optional[UserAccount]:
        raise NotImplementedError

    @abc.abstractmethod
    def list_active_staff_ids(self) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def record_donation(self, donor_id: str, units: int, donated_at: datetime):
        """donations +1, units +n, last donation date only ever moves forward."""
        raise NotImplementedError

    @abc.abstractmethod
    def add_lives_saved(self, donor_id: str, units: int):
        raise NotImplementedError

    @abc.abstractmethod
    def add_rating(self, donor_id: str, rating: int):
        raise NotImplementedError


class SqlAlchemyUserRepository(AbstractUserRepository):
    def __init__(self, session):
        self.session = session

    def add(self, user):
        self.session.add(user)

    def get(self, user_id):
        return self.session.get(UserAccount, user_id)

    def list_active_staff_ids(self):
        users = orm.user_accounts
        stmt = (
            select(users.c.user_id)
            .where(users.c.role.in_(actors.STAFF_ROLES))
            .where(users.c.is_active.is_(True))
            .order_by(users.c.user_id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def _increment(self, donor_id, **values):
        result = self.session.execute(
            update(orm.user_accounts).where(orm.user_accounts.c.user_id == donor_id).values(**values)
        )
        if result.rowcount == 0:
            logger.warning(f"Donor {donor_id} not found, statistics not updated")

    def record_donation(self, donor_id, units, donated_at):
        users = orm.user_accounts
        donated = literal(donated_at, type_=orm.UTCDateTime())
        self._increment(
            donor_id,
            total_donations=users.c.total_donations + 1,
            total_units=users.c.total_units + units,
            last_donation_at=case(
                (or_(users.c.last_donation_at.is_(None), users.c.last_donation_at < donated), donated),
                else_=users.c.last_donation_at,
            ),
        )

    def add_lives_saved(self, donor_id, units):
        users = orm.user_accounts
        self._increment(donor_id, lives_saved=users.c.lives_saved + units)

    def add_rating(self, donor_id, rating):
        users = orm.user_accounts
        self._increment(
            donor_id,
            rating_total=users.c.rating_total + rating,
            rating_count=users.c.rating_count + 1,
        )
