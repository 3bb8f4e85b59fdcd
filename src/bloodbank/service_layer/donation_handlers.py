"""Command and event handlers for the donation pipeline."""

import logging
import uuid

from sqlalchemy.exc import IntegrityError

import config
from bloodbank.adapters import notifications
from bloodbank.adapters.notifications import Notification
from bloodbank.domain import actors, commands, events
from bloodbank.domain.blood_request import OPEN_STATUSES
from bloodbank.domain.clock import utcnow
from bloodbank.domain.donation import Donation, generate_batch_number
from bloodbank.domain.eligibility import check_eligibility
from bloodbank.domain.exceptions import (
    AuthorizationError,
    DuplicateResponseError,
    IllegalTransitionError,
    NotFoundError,
)
from bloodbank.service_layer.request_handlers import load_request
from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _load_donation(uow: AbstractUnitOfWork, donation_id: str) -> Donation:
    record = uow.donations.get(donation_id, for_update=True)
    if record is None:
        raise NotFoundError(f"Donation {donation_id} not found")
    return record


def schedule_donation(command: commands.ScheduleDonation, uow: AbstractUnitOfWork) -> str:
    """
    Book a donation for the calling donor.

    Missing phone or blood type are hard errors. A failed eligibility check
    is only a warning here: staff make the real call at the health check.
    """
    now = utcnow()

    with uow:
        if command.actor.role != actors.DONOR:
            raise AuthorizationError("Only donors can schedule a donation")
        donor = uow.users.get(command.actor.user_id)
        if donor is None:
            raise NotFoundError(f"User {command.actor.user_id} not found")

        if command.request_id:
            request = load_request(uow, command.request_id, now, for_update=False)
            if request.status not in OPEN_STATUSES:
                raise IllegalTransitionError("Linked blood request is no longer active", request.status)

        warning = None
        eligibility = check_eligibility(donor, now, config.get_donation_interval_days())
        if not eligibility.can_donate:
            warning = eligibility.reason
            logger.warning(f"Donor {donor.user_id} scheduling while not eligible: {warning}")

        record = Donation.for_donor(
            donation_id=str(uuid.uuid4()),
            donor=donor,
            now=now,
            donation_type=command.donation_type,
            units=command.units,
            scheduled_at=command.scheduled_at,
            collection_site=command.collection_site,
            request_id=command.request_id,
            additional_notes=command.additional_notes,
            eligibility_warning=warning,
        )
        record.schedule(command.actor, now)
        donation_id = uow.donations.add(record)
        uow.commit()

    logger.info(f"Scheduled donation {donation_id} for donor {command.actor.user_id}")
    return donation_id


def start_donation(command: commands.StartDonation, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.start(
            command.actor,
            phlebotomist_id=command.phlebotomist_id,
            collection_site=command.collection_site,
            vitals=command.vitals,
            is_eligible=command.is_eligible,
            now=utcnow(),
            notes=command.health_check_notes,
        )
        status = record.status
        uow.commit()

    logger.info(f"Donation {command.donation_id} health check done, status {status}")
    return status


def complete_donation(command: commands.CompleteDonation, uow: AbstractUnitOfWork) -> str:
    """Finish collection and credit the donor in the same transaction."""
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.complete(command.actor, now=utcnow(), end_time=command.end_time, notes=command.notes)
        uow.users.record_donation(record.donor_id, record.units, record.collection.end_time)
        status = record.status
        uow.commit()

    logger.info(f"Donation {command.donation_id} completed")
    return status


def record_test_results(command: commands.RecordTestResults, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        suitable = record.record_test_results(command.actor, command.results, now=utcnow())
        status = record.status
        uow.commit()

    if suitable:
        logger.info(f"Donation {command.donation_id} passed testing")
    else:
        logger.warning(f"Donation {command.donation_id} failed testing and was discarded")
    return status


def store_blood(command: commands.StoreBlood, uow: AbstractUnitOfWork) -> str:
    now = utcnow()
    with uow:
        record = _load_donation(uow, command.donation_id)
        batch_number = generate_batch_number(now)
        record.store(
            command.actor,
            storage_location=command.storage_location,
            expiry_date=command.expiry_date,
            batch_number=batch_number,
            now=now,
            storage_temperature=command.storage_temperature,
        )
        uow.commit()

    logger.info(f"Donation {command.donation_id} stored as batch {batch_number}")
    return batch_number


def distribute_blood(command: commands.DistributeBlood, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.distribute(
            command.actor,
            hospital_name=command.hospital_name,
            patient_name=command.patient_name,
            now=utcnow(),
            hospital_id=command.hospital_id,
            patient_id=command.patient_id,
        )
        uow.users.add_lives_saved(record.donor_id, record.units)
        status = record.status
        uow.commit()

    logger.info(f"Donation {command.donation_id} distributed to {command.hospital_name}")
    return status


def submit_feedback(command: commands.SubmitDonationFeedback, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.add_feedback(
            command.actor,
            rating=command.rating,
            would_donate_again=command.would_donate_again,
            now=utcnow(),
            comments=command.comments,
        )
        uow.users.add_rating(record.donor_id, command.rating)
        status = record.status
        try:
            uow.commit()
        except IntegrityError:
            raise DuplicateResponseError("Feedback has already been submitted for this donation")

    logger.info(f"Feedback recorded for donation {command.donation_id}")
    return status


def _serves_recipient(uow: AbstractUnitOfWork, record: Donation, recipient_id: str) -> bool:
    if record.request_id:
        request = uow.requests.get(record.request_id)
        if request is not None and request.requester_id == recipient_id:
            return True
    return uow.requests.donor_responded_to_requester(recipient_id, record.donor_id)


def respond_to_donation(command: commands.RespondToDonation, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        associated = command.actor.role == actors.RECIPIENT and _serves_recipient(
            uow, record, command.actor.user_id
        )
        entry = record.record_recipient_response(
            command.actor,
            response=command.response,
            now=utcnow(),
            associated=associated,
            notes=command.notes,
        )
        response = entry.response
        try:
            uow.commit()
        except IntegrityError:
            raise DuplicateResponseError("You have already responded to this donation")

    logger.info(f"Recipient {command.actor.user_id} {response} donation {command.donation_id}")
    return response


def set_recipient_review(command: commands.SetRecipientReview, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.set_recipient_review(command.actor, command.status, now=utcnow(), notes=command.notes)
        review = record.review_status
        uow.commit()

    logger.info(f"Recipient review for donation {command.donation_id} set to {review}")
    return review


def cancel_donation(command: commands.CancelDonation, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.cancel(command.actor, reason=command.reason, now=utcnow())
        status = record.status
        uow.commit()

    logger.info(f"Donation {command.donation_id} cancelled by {command.actor.user_id}")
    return status


def record_post_donation_care(command: commands.RecordPostDonationCare, uow: AbstractUnitOfWork) -> str:
    with uow:
        record = _load_donation(uow, command.donation_id)
        record.record_post_donation_care(
            command.actor,
            now=utcnow(),
            recovery_minutes=command.recovery_minutes,
            symptoms=command.symptoms,
            follow_up_required=command.follow_up_required,
            follow_up_date=command.follow_up_date,
            follow_up_notes=command.follow_up_notes,
        )
        status = record.status
        uow.commit()

    logger.info(f"Post-donation care recorded for donation {command.donation_id}")
    return status


def _notify_donor(uow: AbstractUnitOfWork, event: events.DonationEvent, **fields):
    uow.notifications.send(
        Notification(
            recipient_id=event.donor_id,
            related_id=event.donation_id,
            related_type="donation",
            **fields,
        )
    )


def notify_donation_scheduled(event: events.DonationScheduled, uow: AbstractUnitOfWork):
    _notify_donor(
        uow,
        event,
        title="Donation Scheduled",
        message=f"Your {event.donation_type.replace('_', ' ')} donation is scheduled at {event.collection_site}",
        type=notifications.APPOINTMENT,
        metadata=dict(scheduled_at=event.scheduled_at, eligibility_warning=event.eligibility_warning),
    )


def notify_staff_of_scheduled_donation(event: events.DonationScheduled, uow: AbstractUnitOfWork):
    with uow:
        staff_ids = uow.users.list_active_staff_ids()
    if not staff_ids:
        return
    uow.notifications.send_batch(
        [
            Notification(
                recipient_id=staff_id,
                title="New Donation Scheduled",
                message=f"{event.donor_name} scheduled a donation at {event.collection_site}",
                type=notifications.APPOINTMENT,
                related_id=event.donation_id,
                related_type="donation",
                metadata=dict(
                    scheduled_at=event.scheduled_at,
                    request_id=event.request_id,
                    eligibility_warning=event.eligibility_warning,
                ),
            )
            for staff_id in staff_ids
        ]
    )


def notify_donation_cancelled(event: events.DonationCancelled, uow: AbstractUnitOfWork):
    if event.health_check_failed:
        message = "Your donation was cancelled after the pre-donation health check"
    else:
        message = f"Your donation was cancelled: {event.reason}"
    _notify_donor(
        uow,
        event,
        title="Donation Cancelled",
        message=message,
        type=notifications.APPOINTMENT,
        metadata=dict(reason=event.reason, health_check_failed=event.health_check_failed),
    )


def notify_donation_completed(event: events.DonationCompleted, uow: AbstractUnitOfWork):
    _notify_donor(
        uow,
        event,
        title="Donation Completed!",
        message=f"Thank you for donating {event.units} unit(s) of {event.donation_type.replace('_', ' ')}",
        type=notifications.DONATION_COMPLETED,
        priority="high",
        action_required=True,
        metadata=dict(duration_minutes=event.duration_minutes),
    )


def notify_test_results(event, uow: AbstractUnitOfWork):
    if event.is_suitable:
        title, message, priority = "Test Results Available", "Your donated blood passed all screening tests", "medium"
    else:
        title, message, priority = (
            "Test Results",
            "Your donated blood could not be used. Please contact the blood bank for follow-up",
            "high",
        )
    _notify_donor(
        uow,
        event,
        title=title,
        message=message,
        type=notifications.MEDICAL_UPDATE,
        priority=priority,
        metadata=dict(is_suitable=event.is_suitable),
    )


def notify_blood_distributed(event: events.BloodDistributed, uow: AbstractUnitOfWork):
    _notify_donor(
        uow,
        event,
        title="Blood Used!",
        message=f"Your donation was delivered to {event.hospital_name} and is helping a patient",
        type=notifications.DONATION_COMPLETED,
        priority="high",
        metadata=dict(units=event.units),
    )
