# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from bloodbank.adapters import audit, donor_locator, notifications, repository


class AbstractUnitOfWork(abc.ABC):
    requests: repository.AbstractRequestRepository
    donations: repository.AbstractDonationRepository
    users: repository.AbstractUserRepository
    donor_locator: donor_locator.AbstractDonorLocator
    notifications: notifications.AbstractNotificationDispatcher
    audit: audit.AbstractAuditRecorder

    def __enter__(self) -> AbstractUnitOfWork:
        self.committed_events = []
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        """Commit, then release the events of everything that was just persisted."""
        self._commit()
        for aggregate in (*self.requests.seen, *self.donations.seen):
            while aggregate.events:
                self.committed_events.append(aggregate.events.pop(0))

    def collect_new_events(self):
        # only changes that reached the database produce events
        committed = getattr(self, "committed_events", [])
        while committed:
            yield committed.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="REPEATABLE READ",
    )
)


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY, notifications_impl=None, audit_impl=None):
        self.session_factory = session_factory
        self.notifications_impl = notifications_impl or notifications.RedisNotificationDispatcher()
        self.audit_impl = audit_impl or audit.RedisAuditRecorder()

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.requests = repository.SqlAlchemyRequestRepository(self.session)
        self.donations = repository.SqlAlchemyDonationRepository(self.session)
        self.users = repository.SqlAlchemyUserRepository(self.session)
        self.donor_locator = donor_locator.SqlAlchemyDonorLocator(self.session)
        self.notifications = self.notifications_impl
        self.audit = self.audit_impl
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
