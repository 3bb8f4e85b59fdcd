"""Domain events for the blood request and donation lifecycles.

One event type per transition. Each carries the actor, the status before
and after, and only the facts relevant to that transition. Audit facts and
notifications are derived from these events after the transaction commits.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple


@dataclass
class Event:
    """Base class for all domain events."""
    pass


@dataclass
class RequestEvent(Event):
    request_id: str
    actor_id: str
    actor_role: str
    previous_status: Optional[str]
    status: str
    occurred_at: datetime


@dataclass
class RequestCreated(RequestEvent):
    """Raised once the request is stored; triggers donor matching."""
    requester_id: str
    blood_type: str
    blood_product: str
    units: int
    urgency: str
    hospital_name: str
    city: str
    state: str
    longitude: float
    latitude: float
    required_by: datetime


@dataclass
class DonorResponded(RequestEvent):
    donor_id: str
    donor_name: str
    requester_id: str
    response: str  # "accepted" or "declined"
    notes: Optional[str] = None


@dataclass
class DonorConfirmed(RequestEvent):
    donor_id: str
    patient_name: str
    donation_date: datetime
    donation_time: str
    donation_location: str


@dataclass
class RequestUpdated(RequestEvent):
    changed_fields: Dict[str, object] = field(default_factory=dict)


@dataclass
class RequestCompleted(RequestEvent):
    requester_id: str
    actual_units: int
    confirmed_donor_id: Optional[str] = None


@dataclass
class RequestCancelled(RequestEvent):
    requester_id: str
    reason: str
    matched_donor_ids: Tuple[str, ...] = ()


@dataclass
class RequestExpired(RequestEvent):
    requester_id: str
    required_by: datetime
    expires_at: datetime


@dataclass
class DonationEvent(Event):
    donation_id: str
    donor_id: str
    actor_id: str
    actor_role: str
    previous_status: Optional[str]
    status: str
    occurred_at: datetime


@dataclass
class DonationScheduled(DonationEvent):
    donor_name: str
    donation_type: str
    units: int
    scheduled_at: datetime
    collection_site: str
    request_id: Optional[str] = None
    eligibility_warning: Optional[str] = None


@dataclass
class DonationStarted(DonationEvent):
    phlebotomist_id: str
    collection_site: str


@dataclass
class DonationCancelled(DonationEvent):
    reason: str
    health_check_failed: bool = False


@dataclass
class DonationCompleted(DonationEvent):
    donation_type: str
    units: int
    duration_minutes: int


@dataclass
class DonationTested(DonationEvent):
    results: Dict[str, str]
    is_suitable: bool = True


@dataclass
class DonationDiscarded(DonationEvent):
    """Raised when any test result is not negative."""
    results: Dict[str, str]
    is_suitable: bool = False


@dataclass
class BloodStored(DonationEvent):
    batch_number: str
    storage_location: str
    expiry_date: datetime


@dataclass
class BloodDistributed(DonationEvent):
    hospital_name: str
    patient_name: str
    units: int


@dataclass
class FeedbackSubmitted(DonationEvent):
    rating: int
    would_donate_again: bool


@dataclass
class PostDonationCareRecorded(DonationEvent):
    follow_up_required: bool


@dataclass
class RecipientResponded(DonationEvent):
    recipient_id: str
    response: str


@dataclass
class RecipientReviewSet(DonationEvent):
    previous_review: str
    review: str
