"""Command and event handlers for the blood request lifecycle."""

import logging
import uuid
from typing import List

from sqlalchemy.exc import IntegrityError

import config
from bloodbank.adapters import notifications
from bloodbank.adapters.donor_locator import DonorLocatorError, GeoPoint
from bloodbank.adapters.notifications import Notification
from bloodbank.domain import commands, events
from bloodbank.domain.blood_request import BloodRequest
from bloodbank.domain.clock import utcnow
from bloodbank.domain.compatibility import compatible_donor_types
from bloodbank.domain.eligibility import check_eligibility
from bloodbank.domain.exceptions import DuplicateResponseError, NotFoundError
from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def load_request(uow: AbstractUnitOfWork, request_id: str, now, for_update: bool = True) -> BloodRequest:
    """
    Fetch a request and apply the expiry check before anything else.

    An expiry found here is committed on its own, so it survives even when
    the command that triggered the load is then rejected.
    """
    request = uow.requests.get(request_id, for_update=for_update)
    if request is None:
        raise NotFoundError(f"Blood request {request_id} not found")
    if request.check_expiry(now):
        logger.info(f"Blood request {request_id} expired on load")
        uow.commit()
    return request


def _load_user(uow: AbstractUnitOfWork, user_id: str):
    user = uow.users.get(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def create_blood_request(command: commands.CreateBloodRequest, uow: AbstractUnitOfWork) -> str:
    """
    Open a new request. Matching runs afterwards, off the RequestCreated
    event, so the request is already committed when donors hear about it.
    """
    logger.info(f"Processing CreateBloodRequest from {command.actor.user_id}")
    now = utcnow()

    with uow:
        requester = _load_user(uow, command.actor.user_id)
        request = BloodRequest.for_requester(
            request_id=str(uuid.uuid4()),
            requester=requester,
            now=now,
            expiry_days=config.get_request_expiry_days(),
            patient_name=command.patient_name,
            patient_age=command.patient_age,
            patient_gender=command.patient_gender,
            patient_blood_type=command.patient_blood_type,
            blood_type=command.blood_type,
            blood_product=command.blood_product,
            units=command.units,
            urgency=command.urgency,
            medical_reason=command.medical_reason,
            medical_reason_description=command.medical_reason_description,
            hospital_name=command.hospital_name,
            hospital_address=command.hospital_address,
            required_by=command.required_by,
            longitude=command.longitude,
            latitude=command.latitude,
            city=command.city,
            state=command.state,
            is_emergency=command.is_emergency,
            additional_notes=command.additional_notes,
        )
        request.create(command.actor, now)
        request_id = uow.requests.add(request)
        uow.commit()

    logger.info(f"Created blood request {request_id} ({command.blood_type}, {command.urgency})")
    return request_id


def respond_to_request(command: commands.RespondToRequest, uow: AbstractUnitOfWork) -> str:
    logger.info(f"Donor {command.actor.user_id} responding '{command.response}' to request {command.request_id}")
    now = utcnow()

    with uow:
        request = load_request(uow, command.request_id, now)
        donor = _load_user(uow, command.actor.user_id)
        eligibility = None
        if command.response == "accept":
            eligibility = check_eligibility(donor, now, config.get_donation_interval_days())
        match = request.respond(
            donor=donor,
            actor=command.actor,
            response=command.response,
            now=now,
            notes=command.notes,
            eligibility=eligibility,
        )
        status = match.status
        try:
            uow.commit()
        except IntegrityError:
            # a concurrent response from the same donor won the insert
            raise DuplicateResponseError("You have already responded to this request")

    logger.info(f"Request {command.request_id}: donor {command.actor.user_id} {status}")
    return status


def confirm_donor(command: commands.ConfirmDonor, uow: AbstractUnitOfWork) -> str:
    now = utcnow()
    with uow:
        request = load_request(uow, command.request_id, now)
        request.confirm_donor(
            actor=command.actor,
            donor_id=command.donor_id,
            donation_date=command.donation_date,
            donation_time=command.donation_time,
            donation_location=command.donation_location,
            now=now,
        )
        status = request.status
        uow.commit()

    logger.info(f"Request {command.request_id}: donor {command.donor_id} confirmed")
    return status


def complete_request(command: commands.CompleteRequest, uow: AbstractUnitOfWork) -> str:
    now = utcnow()
    with uow:
        request = load_request(uow, command.request_id, now)
        request.complete(command.actor, actual_units=command.actual_units, now=now, notes=command.notes)
        status = request.status
        uow.commit()

    logger.info(f"Request {command.request_id} completed with {command.actual_units} units")
    return status


def cancel_request(command: commands.CancelRequest, uow: AbstractUnitOfWork) -> str:
    now = utcnow()
    with uow:
        request = load_request(uow, command.request_id, now)
        request.cancel(command.actor, reason=command.reason, now=now)
        status = request.status
        uow.commit()

    logger.info(f"Request {command.request_id} cancelled by {command.actor.user_id}")
    return status


def update_blood_request(command: commands.UpdateBloodRequest, uow: AbstractUnitOfWork) -> str:
    now = utcnow()
    with uow:
        request = load_request(uow, command.request_id, now)
        request.update(
            command.actor,
            now,
            urgency=command.urgency,
            required_by=command.required_by,
            additional_notes=command.additional_notes,
            medical_reason_description=command.medical_reason_description,
            status=command.status,
            cancellation_reason=command.cancellation_reason,
        )
        status = request.status
        uow.commit()

    logger.info(f"Request {command.request_id} updated by {command.actor.user_id}, status {status}")
    return status


def expire_stale_requests(command: commands.ExpireStaleRequests, uow: AbstractUnitOfWork) -> List[str]:
    now = command.now or utcnow()
    with uow:
        expired = [r.request_id for r in uow.requests.list_stale_pending(now) if r.check_expiry(now)]
        uow.commit()

    if expired:
        logger.info(f"Expired {len(expired)} stale blood requests")
    return expired


def match_donors(event: events.RequestCreated, uow: AbstractUnitOfWork):
    """
    Notify nearby compatible donors and all active staff about a new request.

    Matching never changes the request. A failed lookup leaves the request
    created but unmatched; a failed notification only skips that donor.
    """
    settings = config.get_matching_settings()
    acceptable = compatible_donor_types(event.blood_type)

    with uow:
        try:
            donors = uow.donor_locator.find_nearby(
                GeoPoint(longitude=event.longitude, latitude=event.latitude),
                radius_meters=settings["radius_meters"],
                blood_types=acceptable,
                limit=settings["max_donors"],
                exclude_ids=[event.requester_id],
            )
        except DonorLocatorError as e:
            logger.error(f"Donor lookup failed for request {event.request_id}, request stays unmatched: {e}")
            donors = []
        staff_ids = uow.users.list_active_staff_ids()

    critical = event.urgency == "critical"
    notified = 0
    for donor in donors:
        try:
            uow.notifications.send(
                Notification(
                    recipient_id=donor.donor_id,
                    title="Urgent Blood Request",
                    message=f"{event.blood_type} blood needed urgently at {event.hospital_name}",
                    type=notifications.BLOOD_REQUEST,
                    priority="critical" if critical else "high",
                    is_urgent=critical,
                    related_id=event.request_id,
                    related_type="blood_request",
                    action_required=True,
                    metadata=dict(
                        blood_type=event.blood_type,
                        urgency=event.urgency,
                        hospital_name=event.hospital_name,
                        distance_km=donor.distance_km,
                    ),
                )
            )
            notified += 1
        except Exception:
            logger.exception(f"Failed to notify donor {donor.donor_id} about request {event.request_id}")

    logger.info(f"Request {event.request_id}: notified {notified} of {len(donors)} nearby donors")

    if not staff_ids:
        return
    try:
        uow.notifications.send_batch(
            [
                Notification(
                    recipient_id=staff_id,
                    title="New Blood Request",
                    message=f"{event.units} unit(s) of {event.blood_type} {event.blood_product} "
                    f"requested at {event.hospital_name}, {event.city}",
                    type=notifications.EMERGENCY_ALERT if critical else notifications.BLOOD_REQUEST,
                    priority="critical" if critical else "medium",
                    is_urgent=critical,
                    related_id=event.request_id,
                    related_type="blood_request",
                    metadata=dict(donors_notified=notified),
                )
                for staff_id in staff_ids
            ]
        )
    except Exception:
        logger.exception(f"Failed to notify staff about request {event.request_id}")


def notify_requester_of_response(event: events.DonorResponded, uow: AbstractUnitOfWork):
    if event.response != "accepted":
        return
    uow.notifications.send(
        Notification(
            recipient_id=event.requester_id,
            title="Donor Response",
            message=f"{event.donor_name} has accepted your blood request",
            type=notifications.DONATION_MATCH,
            related_id=event.request_id,
            related_type="blood_request",
            action_required=True,
            metadata=dict(donor_id=event.donor_id, donor_name=event.donor_name, response=event.response),
        )
    )


def notify_confirmed_donor(event: events.DonorConfirmed, uow: AbstractUnitOfWork):
    uow.notifications.send(
        Notification(
            recipient_id=event.donor_id,
            title="Donation Confirmed!",
            message=f"Your donation has been confirmed for {event.patient_name}",
            type=notifications.DONATION_CONFIRMED,
            priority="high",
            related_id=event.request_id,
            related_type="blood_request",
            action_required=True,
            metadata=dict(
                patient_name=event.patient_name,
                donation_date=event.donation_date,
                donation_time=event.donation_time,
                donation_location=event.donation_location,
            ),
        )
    )


def notify_matched_donors_of_cancellation(event: events.RequestCancelled, uow: AbstractUnitOfWork):
    for donor_id in event.matched_donor_ids:
        try:
            uow.notifications.send(
                Notification(
                    recipient_id=donor_id,
                    title="Request Cancelled",
                    message="The blood request you responded to has been cancelled",
                    type=notifications.BLOOD_REQUEST,
                    related_id=event.request_id,
                    related_type="blood_request",
                    metadata=dict(reason=event.reason),
                )
            )
        except Exception:
            logger.exception(f"Failed to notify donor {donor_id} of cancelled request {event.request_id}")


def notify_requester_of_expiry(event: events.RequestExpired, uow: AbstractUnitOfWork):
    uow.notifications.send(
        Notification(
            recipient_id=event.requester_id,
            title="Blood Request Expired",
            message="Your blood request expired before a donor was matched",
            type=notifications.BLOOD_REQUEST,
            related_id=event.request_id,
            related_type="blood_request",
            metadata=dict(required_by=event.required_by, expires_at=event.expires_at),
        )
    )
