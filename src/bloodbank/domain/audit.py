"""Audit facts derived from lifecycle events.

Every transition event maps to one action name and a risk tier. The
recorder adapter only decides where the fact goes.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from bloodbank.domain import events

LOW = "low"
MEDIUM = "medium"
HIGH = "high"

BLOOD_REQUEST = "blood_request"
DONATION = "donation"


@dataclass
class AuditFact:
    actor_id: str
    actor_role: str
    action: str
    resource_type: str
    resource_id: str
    previous_status: Optional[str]
    status: str
    occurred_at: datetime
    risk_level: str
    details: Dict[str, Any] = field(default_factory=dict)


def _create_risk(event: events.RequestCreated) -> str:
    return HIGH if event.urgency == "critical" else LOW


def _respond_action(event: events.DonorResponded) -> str:
    return "blood_request_match" if event.response == "accepted" else "blood_request_decline"


def _update_action(event: events.RequestUpdated) -> str:
    if event.status != event.previous_status:
        return "blood_request_status_change"
    return "blood_request_update"


def _update_risk(event: events.RequestUpdated) -> str:
    return MEDIUM if event.status != event.previous_status else LOW


Rule = Union[str, Callable[[Any], str]]

# event type -> (action, risk tier)
ACTIONS = {
    events.RequestCreated: ("blood_request_create", _create_risk),
    events.DonorResponded: (_respond_action, LOW),
    events.DonorConfirmed: ("blood_request_confirm", MEDIUM),
    events.RequestUpdated: (_update_action, _update_risk),
    events.RequestCompleted: ("blood_request_complete", MEDIUM),
    events.RequestCancelled: ("blood_request_cancel", HIGH),
    events.RequestExpired: ("blood_request_expire", MEDIUM),
    events.DonationScheduled: ("donation_schedule", LOW),
    events.DonationStarted: ("donation_start", MEDIUM),
    events.DonationCancelled: ("donation_cancel", HIGH),
    events.DonationCompleted: ("donation_complete", LOW),
    events.DonationTested: ("donation_test", MEDIUM),
    events.DonationDiscarded: ("donation_discard", HIGH),
    events.BloodStored: ("donation_store", LOW),
    events.BloodDistributed: ("donation_distribute", MEDIUM),
    events.FeedbackSubmitted: ("feedback_submission", LOW),
    events.PostDonationCareRecorded: ("post_donation_care", LOW),
    events.RecipientResponded: ("donation_recipient_response", LOW),
    events.RecipientReviewSet: ("donation_recipient_review", MEDIUM),
}  # type: Dict[Type[events.Event], Tuple[Rule, Rule]]


def _resolve(rule: Rule, event) -> str:
    return rule(event) if callable(rule) else rule


def _details(event, base) -> Dict[str, Any]:
    skip = {f.name for f in fields(base)}
    return {f.name: getattr(event, f.name) for f in fields(event) if f.name not in skip}


def fact_for(event: events.Event) -> AuditFact:
    """Build the audit fact for a request or donation event."""
    try:
        action_rule, risk_rule = ACTIONS[type(event)]
    except KeyError:
        raise ValueError(f"No audit action defined for {type(event).__name__}")

    if isinstance(event, events.RequestEvent):
        resource_type, resource_id, base = BLOOD_REQUEST, event.request_id, events.RequestEvent
    else:
        resource_type, resource_id, base = DONATION, event.donation_id, events.DonationEvent

    details = _details(event, base)
    if isinstance(event, events.DonationEvent):
        details["donor_id"] = event.donor_id

    return AuditFact(
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        action=_resolve(action_rule, event),
        resource_type=resource_type,
        resource_id=resource_id,
        previous_status=event.previous_status,
        status=event.status,
        occurred_at=event.occurred_at,
        risk_level=_resolve(risk_rule, event),
        details=details,
    )
