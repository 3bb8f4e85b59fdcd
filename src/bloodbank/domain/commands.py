"""Commands for the blood request and donation lifecycles."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from bloodbank.domain.actors import Actor
from bloodbank.domain.donation import Vitals


@dataclass
class Command:
    """Base class for all commands."""
    pass


@dataclass
class CreateBloodRequest(Command):
    """Command to open a new blood request and start donor matching."""
    actor: Actor
    patient_name: str
    patient_age: int
    patient_gender: str
    patient_blood_type: str
    blood_type: str
    blood_product: str
    units: int
    urgency: str
    medical_reason: str
    hospital_name: str
    required_by: datetime
    longitude: float
    latitude: float
    city: str
    state: str
    medical_reason_description: Optional[str] = None
    hospital_address: Optional[str] = None
    is_emergency: bool = False
    additional_notes: Optional[str] = None


@dataclass
class RespondToRequest(Command):
    """Command for a donor to accept or decline a blood request."""
    actor: Actor
    request_id: str
    response: str  # "accept" or "decline"
    notes: Optional[str] = None


@dataclass
class ConfirmDonor(Command):
    actor: Actor
    request_id: str
    donor_id: str
    donation_date: datetime
    donation_time: str
    donation_location: str


@dataclass
class CompleteRequest(Command):
    actor: Actor
    request_id: str
    actual_units: int
    notes: Optional[str] = None


@dataclass
class CancelRequest(Command):
    actor: Actor
    request_id: str
    reason: str


@dataclass
class UpdateBloodRequest(Command):
    """Change non-status fields; staff may also move the status forward."""
    actor: Actor
    request_id: str
    urgency: Optional[str] = None
    required_by: Optional[datetime] = None
    additional_notes: Optional[str] = None
    medical_reason_description: Optional[str] = None
    status: Optional[str] = None
    cancellation_reason: Optional[str] = None


@dataclass
class ExpireStaleRequests(Command):
    """Periodic sweep moving overdue pending requests to expired."""
    now: Optional[datetime] = None


@dataclass
class ScheduleDonation(Command):
    actor: Actor
    donation_type: str
    units: int
    scheduled_at: datetime
    collection_site: str
    request_id: Optional[str] = None
    additional_notes: Optional[str] = None


@dataclass
class StartDonation(Command):
    """Command recording the pre-donation health check."""
    actor: Actor
    donation_id: str
    phlebotomist_id: str
    collection_site: str
    vitals: Vitals
    is_eligible: bool
    health_check_notes: Optional[str] = None


@dataclass
class CompleteDonation(Command):
    actor: Actor
    donation_id: str
    end_time: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass
class RecordTestResults(Command):
    actor: Actor
    donation_id: str
    results: Dict[str, str]


@dataclass
class StoreBlood(Command):
    actor: Actor
    donation_id: str
    storage_location: str
    expiry_date: datetime
    storage_temperature: Optional[float] = None


@dataclass
class DistributeBlood(Command):
    actor: Actor
    donation_id: str
    hospital_name: str
    patient_name: str
    hospital_id: Optional[str] = None
    patient_id: Optional[str] = None


@dataclass
class SubmitDonationFeedback(Command):
    actor: Actor
    donation_id: str
    rating: int
    would_donate_again: bool
    comments: Optional[str] = None


@dataclass
class CancelDonation(Command):
    actor: Actor
    donation_id: str
    reason: str


@dataclass
class RecordPostDonationCare(Command):
    actor: Actor
    donation_id: str
    recovery_minutes: Optional[int] = None
    symptoms: List[str] = field(default_factory=list)
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None


@dataclass
class RespondToDonation(Command):
    """A recipient accepts or declines a donation made for them."""
    actor: Actor
    donation_id: str
    response: str  # "accept" or "decline"
    notes: Optional[str] = None


@dataclass
class SetRecipientReview(Command):
    actor: Actor
    donation_id: str
    status: str  # "accepted" or "declined"
    notes: Optional[str] = None
