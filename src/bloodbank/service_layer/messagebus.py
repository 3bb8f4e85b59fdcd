# pylint: disable=broad-except
"""Message bus for the blood request and donation lifecycles."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from bloodbank.domain.commands import Command
from bloodbank.domain.events import Event
from bloodbank.domain import audit, commands, events
from bloodbank.service_layer import donation_handlers, request_handlers

if TYPE_CHECKING:
    from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


def handle(
    message: Message,
    uow: AbstractUnitOfWork,
):
    """Handle message (command or event) with the appropriate handler."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle event by calling all registered event handlers."""
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {event} with handler {handler}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle command by calling the registered command handler."""
    logger.debug(f"handling command {command}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", command)
        # an expiry committed while loading still gets audited and announced
        for event in uow.collect_new_events():
            handle_event(event, queue, uow)
        raise


def record_audit_fact(event: Event, uow: AbstractUnitOfWork):
    uow.audit.record(audit.fact_for(event))


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    events.RequestCreated: [record_audit_fact, request_handlers.match_donors],
    events.DonorResponded: [record_audit_fact, request_handlers.notify_requester_of_response],
    events.DonorConfirmed: [record_audit_fact, request_handlers.notify_confirmed_donor],
    events.RequestUpdated: [record_audit_fact],
    events.RequestCompleted: [record_audit_fact],
    events.RequestCancelled: [record_audit_fact, request_handlers.notify_matched_donors_of_cancellation],
    events.RequestExpired: [record_audit_fact, request_handlers.notify_requester_of_expiry],
    events.DonationScheduled: [
        record_audit_fact,
        donation_handlers.notify_donation_scheduled,
        donation_handlers.notify_staff_of_scheduled_donation,
    ],
    events.DonationStarted: [record_audit_fact],
    events.DonationCancelled: [record_audit_fact, donation_handlers.notify_donation_cancelled],
    events.DonationCompleted: [record_audit_fact, donation_handlers.notify_donation_completed],
    events.DonationTested: [record_audit_fact, donation_handlers.notify_test_results],
    events.DonationDiscarded: [record_audit_fact, donation_handlers.notify_test_results],
    events.BloodStored: [record_audit_fact],
    events.BloodDistributed: [record_audit_fact, donation_handlers.notify_blood_distributed],
    events.FeedbackSubmitted: [record_audit_fact],
    events.PostDonationCareRecorded: [record_audit_fact],
    events.RecipientResponded: [record_audit_fact],
    events.RecipientReviewSet: [record_audit_fact],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    commands.CreateBloodRequest: request_handlers.create_blood_request,
    commands.RespondToRequest: request_handlers.respond_to_request,
    commands.ConfirmDonor: request_handlers.confirm_donor,
    commands.CompleteRequest: request_handlers.complete_request,
    commands.CancelRequest: request_handlers.cancel_request,
    commands.UpdateBloodRequest: request_handlers.update_blood_request,
    commands.ExpireStaleRequests: request_handlers.expire_stale_requests,
    commands.ScheduleDonation: donation_handlers.schedule_donation,
    commands.StartDonation: donation_handlers.start_donation,
    commands.CompleteDonation: donation_handlers.complete_donation,
    commands.RecordTestResults: donation_handlers.record_test_results,
    commands.StoreBlood: donation_handlers.store_blood,
    commands.DistributeBlood: donation_handlers.distribute_blood,
    commands.SubmitDonationFeedback: donation_handlers.submit_feedback,
    commands.CancelDonation: donation_handlers.cancel_donation,
    commands.RecordPostDonationCare: donation_handlers.record_post_donation_care,
    commands.RespondToDonation: donation_handlers.respond_to_donation,
    commands.SetRecipientReview: donation_handlers.set_recipient_review,
}  # type: Dict[Type[Command], Callable]
