"""Donation aggregate: one donor's contribution from scheduling to distribution."""

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from bloodbank.domain import actors, events
from bloodbank.domain.actors import Actor
from bloodbank.domain.blood_request import BLOOD_PRODUCTS
from bloodbank.domain.clock import ensure_utc
from bloodbank.domain.exceptions import (
    AuthorizationError,
    DuplicateResponseError,
    IllegalTransitionError,
    ValidationError,
)
from bloodbank.domain.users import UserAccount

SCHEDULED = "scheduled"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
TESTED = "tested"
STORED = "stored"
DISTRIBUTED = "distributed"
DISCARDED = "discarded"
CANCELLED = "cancelled"

TERMINAL_STATUSES = (DISTRIBUTED, DISCARDED, CANCELLED)
# blood has been collected, so aftercare can be recorded
POST_COLLECTION_STATUSES = (COMPLETED, TESTED, STORED, DISTRIBUTED, DISCARDED)

PATHOGENS = ("hiv", "hepatitis_b", "hepatitis_c", "syphilis", "malaria")
NEGATIVE = "negative"
POSITIVE = "positive"
TEST_PENDING = "pending"
TEST_OUTCOMES = (NEGATIVE, POSITIVE, TEST_PENDING)

MIN_UNITS, MAX_UNITS = 1, 2

# recipient verdicts on a donation, and the staff review of them
RECIPIENT_RESPONSES = {"accept": "accepted", "decline": "declined"}
REVIEW_PENDING = "pending"
REVIEW_STATUSES = ("accepted", "declined")
MAX_NOTES_LENGTH = 500
COLLECTION_METHODS = ("manual", "automated")

_BATCH_ALPHABET = string.ascii_uppercase + string.digits


def generate_batch_number(now: datetime) -> str:
    """Batch identifiers look like B2410187QX2: date plus four random characters."""
    suffix = "".join(secrets.choice(_BATCH_ALPHABET) for _ in range(4))
    return f"B{now:%y%m%d}{suffix}"


@dataclass(frozen=True)
class Vitals:
    systolic: Optional[int] = None
    diastolic: Optional[int] = None
    heart_rate: Optional[int] = None
    temperature: Optional[float] = None
    hemoglobin: Optional[float] = None
    weight: Optional[float] = None

    def validate_for_donation(self) -> None:
        """Vitals recorded for an eligible donor must be complete and within donation limits."""
        checks = (
            ("systolic", self.systolic, 80, 200),
            ("diastolic", self.diastolic, 40, 120),
            ("heart_rate", self.heart_rate, 40, 120),
            ("temperature", self.temperature, 35, 38),
            ("hemoglobin", self.hemoglobin, 12, None),
            ("weight", self.weight, 50, None),
        )
        for name, value, low, high in checks:
            if value is None:
                raise ValidationError(f"{name} is required when the donor is eligible")
            if value < low or (high is not None and value > high):
                limit = f"{low}-{high}" if high is not None else f">= {low}"
                raise ValidationError(f"{name} {value} is outside the donation range ({limit})")

    def validate_recorded(self) -> None:
        for name in ("systolic", "diastolic", "heart_rate", "temperature", "hemoglobin", "weight"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative")


@dataclass(eq=False)
class HealthCheck:
    is_eligible: bool
    performed_by: str
    performed_at: datetime
    systolic: Optional[int] = None
    diastolic: Optional[int] = None
    heart_rate: Optional[int] = None
    temperature: Optional[float] = None
    hemoglobin: Optional[float] = None
    weight: Optional[float] = None
    notes: Optional[str] = None


@dataclass(eq=False)
class CollectionProcess:
    start_time: datetime
    phlebotomist_id: str
    collection_site: str
    collection_method: str = "manual"
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    complications: List[str] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass(eq=False)
class PostDonationCare:
    recorded_by: str
    recorded_at: datetime
    recovery_minutes: Optional[int] = None
    symptoms: List[str] = field(default_factory=list)
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None


@dataclass(eq=False)
class LabTesting:
    hiv: str
    hepatitis_b: str
    hepatitis_c: str
    syphilis: str
    malaria: str
    is_suitable: bool
    tested_by: str
    tested_at: datetime

    @property
    def results(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in PATHOGENS}


@dataclass(eq=False)
class StorageRecord:
    storage_location: str
    batch_number: str
    stored_at: datetime
    expiry_date: datetime
    storage_temperature: Optional[float] = None


@dataclass(eq=False)
class DistributionRecord:
    hospital_name: str
    patient_name: str
    distributed_by: str
    distributed_at: datetime
    hospital_id: Optional[str] = None
    patient_id: Optional[str] = None


@dataclass(eq=False)
class DonorFeedback:
    rating: int
    would_donate_again: bool
    submitted_at: datetime
    comments: Optional[str] = None


@dataclass(eq=False)
class RecipientResponse:
    recipient_id: str
    response: str
    responded_at: datetime
    notes: Optional[str] = None


@dataclass(eq=False)
class RecipientReview:
    status: str
    decided_by: str
    decided_at: datetime
    notes: Optional[str] = None


class Donation:
    def __init__(
        self,
        donation_id: str,
        donor_id: str,
        donor_name: str,
        donor_phone: str,
        donor_email: Optional[str],
        donor_blood_type: str,
        donation_type: str,
        units: int,
        scheduled_at: datetime,
        collection_site: str,
        created_at: datetime,
        request_id: Optional[str] = None,
        additional_notes: Optional[str] = None,
        eligibility_warning: Optional[str] = None,
        status: str = SCHEDULED,
    ):
        self.donation_id = donation_id
        self.donor_id = donor_id
        self.donor_name = donor_name
        self.donor_phone = donor_phone
        self.donor_email = donor_email
        self.donor_blood_type = donor_blood_type
        self.donation_type = donation_type
        self.units = units
        self.scheduled_at = ensure_utc(scheduled_at)
        self.collection_site = collection_site
        self.created_at = ensure_utc(created_at)
        self.request_id = request_id
        self.additional_notes = additional_notes
        self.eligibility_warning = eligibility_warning
        self.status = status
        self.health_check = None  # type: Optional[HealthCheck]
        self.collection = None  # type: Optional[CollectionProcess]
        self.post_care = None  # type: Optional[PostDonationCare]
        self.testing = None  # type: Optional[LabTesting]
        self.storage = None  # type: Optional[StorageRecord]
        self.distribution = None  # type: Optional[DistributionRecord]
        self.feedback = None  # type: Optional[DonorFeedback]
        self.recipient_responses = []  # type: List[RecipientResponse]
        self.recipient_review = None  # type: Optional[RecipientReview]
        self.version_number = 0
        self.events = []  # type: List[events.Event]

    def __repr__(self):
        return f"<Donation {self.donation_id} {self.donation_type} {self.status}>"

    def __eq__(self, other):
        if not isinstance(other, Donation):
            return False
        return other.donation_id == self.donation_id

    def __hash__(self):
        return hash(self.donation_id)

    @classmethod
    def for_donor(cls, donation_id: str, donor: UserAccount, now: datetime, **details):
        """Snapshot the donor; phone and blood type are hard requirements."""
        if not donor.phone:
            raise ValidationError("User phone number is required. Please update your profile.")
        if not donor.blood_type:
            raise ValidationError("User blood type is required. Please update your profile.")
        return cls(
            donation_id=donation_id,
            donor_id=donor.user_id,
            donor_name=donor.name,
            donor_phone=donor.phone,
            donor_email=donor.email,
            donor_blood_type=donor.blood_type,
            created_at=now,
            **details,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_suitable(self) -> Optional[bool]:
        return self.testing.is_suitable if self.testing is not None else None

    def is_expired(self, now: datetime) -> bool:
        if self.storage is None:
            return False
        return ensure_utc(now) >= self.storage.expiry_date

    def _require_status(self, expected: str, message: str) -> None:
        if self.status != expected:
            raise IllegalTransitionError(message, self.status)

    def _event_fields(self, actor: Actor, previous_status: Optional[str], now: datetime) -> dict:
        return dict(
            donation_id=self.donation_id,
            donor_id=self.donor_id,
            actor_id=actor.user_id,
            actor_role=actor.role,
            previous_status=previous_status,
            status=self.status,
            occurred_at=now,
        )

    def _move_to(self, status: str) -> str:
        previous_status = self.status
        self.status = status
        self.version_number += 1
        return previous_status

    def schedule(self, actor: Actor, now: datetime) -> None:
        """Validate a newly scheduled donation and raise DonationScheduled."""
        now = ensure_utc(now)
        if actor.user_id != self.donor_id and not actor.is_staff:
            raise AuthorizationError("Donations can only be scheduled by the donor or medical staff")
        if self.donation_type not in BLOOD_PRODUCTS:
            raise ValidationError(f"donation_type must be one of {', '.join(BLOOD_PRODUCTS)}")
        if not isinstance(self.units, int) or not MIN_UNITS <= self.units <= MAX_UNITS:
            raise ValidationError(f"Blood units must be between {MIN_UNITS} and {MAX_UNITS}")
        if self.scheduled_at is None or self.scheduled_at <= now:
            raise ValidationError("Scheduled date must be in the future")
        if not self.collection_site or len(self.collection_site.strip()) < 5:
            raise ValidationError("Collection site is required")
        if self.status != SCHEDULED:
            raise IllegalTransitionError("A new donation must start as scheduled", self.status)

        self.events.append(
            events.DonationScheduled(
                **self._event_fields(actor, None, now),
                donor_name=self.donor_name,
                donation_type=self.donation_type,
                units=self.units,
                scheduled_at=self.scheduled_at,
                collection_site=self.collection_site,
                request_id=self.request_id,
                eligibility_warning=self.eligibility_warning,
            )
        )

    def start(
        self,
        actor: Actor,
        phlebotomist_id: str,
        collection_site: str,
        vitals: Vitals,
        is_eligible: bool,
        now: datetime,
        notes: Optional[str] = None,
    ) -> None:
        """
        Record the health check and either start collection or cancel.

        An ineligible donor goes straight from scheduled to cancelled; no
        collection record is created.
        """
        actors.require_staff(actor, "start a donation")
        self._require_status(SCHEDULED, "Donation is not in scheduled status")
        now = ensure_utc(now)
        if is_eligible:
            vitals.validate_for_donation()
            if not phlebotomist_id:
                raise ValidationError("Phlebotomist is required")
            if not collection_site or len(collection_site.strip()) < 5:
                raise ValidationError("Collection site is required")
        else:
            vitals.validate_recorded()

        self.health_check = HealthCheck(
            is_eligible=is_eligible,
            performed_by=actor.user_id,
            performed_at=now,
            systolic=vitals.systolic,
            diastolic=vitals.diastolic,
            heart_rate=vitals.heart_rate,
            temperature=vitals.temperature,
            hemoglobin=vitals.hemoglobin,
            weight=vitals.weight,
            notes=notes,
        )

        if not is_eligible:
            previous_status = self._move_to(CANCELLED)
            self.events.append(
                events.DonationCancelled(
                    **self._event_fields(actor, previous_status, now),
                    reason=notes or "health_check_failed",
                    health_check_failed=True,
                )
            )
            return

        self.collection = CollectionProcess(
            start_time=now,
            phlebotomist_id=phlebotomist_id,
            collection_site=collection_site,
        )
        previous_status = self._move_to(IN_PROGRESS)
        self.events.append(
            events.DonationStarted(
                **self._event_fields(actor, previous_status, now),
                phlebotomist_id=phlebotomist_id,
                collection_site=collection_site,
            )
        )

    def complete(self, actor: Actor, now: datetime, end_time: Optional[datetime] = None, notes: Optional[str] = None) -> None:
        actors.require_staff(actor, "complete a donation")
        self._require_status(IN_PROGRESS, "Donation is not in progress")
        now = ensure_utc(now)
        end_time = ensure_utc(end_time) or now
        if end_time < self.collection.start_time:
            raise ValidationError("End time cannot be before the collection start time")

        self.collection.end_time = end_time
        self.collection.duration_minutes = round((end_time - self.collection.start_time).total_seconds() / 60)
        self.collection.notes = notes
        previous_status = self._move_to(COMPLETED)
        self.events.append(
            events.DonationCompleted(
                **self._event_fields(actor, previous_status, now),
                donation_type=self.donation_type,
                units=self.units,
                duration_minutes=self.collection.duration_minutes,
            )
        )

    def record_test_results(self, actor: Actor, results: Dict[str, str], now: datetime) -> bool:
        """
        Store the lab results. Suitable only if every pathogen is negative.

        Unsuitable blood is discarded and can never be stored or distributed.
        Returns the suitability.
        """
        actors.require_staff(actor, "record test results")
        self._require_status(COMPLETED, "Donation must be completed before testing")
        missing = [name for name in PATHOGENS if name not in results]
        if missing:
            raise ValidationError(f"Missing test results for: {', '.join(missing)}")
        unknown = set(results) - set(PATHOGENS)
        if unknown:
            raise ValidationError(f"Unknown tests: {', '.join(sorted(unknown))}")
        for name, outcome in results.items():
            if outcome not in TEST_OUTCOMES:
                raise ValidationError(f"Result for {name} must be one of {', '.join(TEST_OUTCOMES)}")

        now = ensure_utc(now)
        is_suitable = all(results[name] == NEGATIVE for name in PATHOGENS)
        self.testing = LabTesting(
            **{name: results[name] for name in PATHOGENS},
            is_suitable=is_suitable,
            tested_by=actor.user_id,
            tested_at=now,
        )

        if is_suitable:
            previous_status = self._move_to(TESTED)
            self.events.append(
                events.DonationTested(**self._event_fields(actor, previous_status, now), results=dict(results))
            )
        else:
            previous_status = self._move_to(DISCARDED)
            self.events.append(
                events.DonationDiscarded(**self._event_fields(actor, previous_status, now), results=dict(results))
            )
        return is_suitable

    def store(
        self,
        actor: Actor,
        storage_location: str,
        expiry_date: datetime,
        batch_number: str,
        now: datetime,
        storage_temperature: Optional[float] = None,
    ) -> None:
        actors.require_staff(actor, "store blood")
        self._require_status(TESTED, "Blood must be tested before storage")
        if not self.is_suitable:
            raise IllegalTransitionError("Blood is not suitable for transfusion", self.status)
        if not storage_location or len(storage_location.strip()) < 5:
            raise ValidationError("Storage location is required")
        now = ensure_utc(now)
        expiry_date = ensure_utc(expiry_date)
        if expiry_date is None or expiry_date <= now:
            raise ValidationError("Expiry date must be in the future")

        self.storage = StorageRecord(
            storage_location=storage_location,
            batch_number=batch_number,
            stored_at=now,
            expiry_date=expiry_date,
            storage_temperature=storage_temperature,
        )
        previous_status = self._move_to(STORED)
        self.events.append(
            events.BloodStored(
                **self._event_fields(actor, previous_status, now),
                batch_number=batch_number,
                storage_location=storage_location,
                expiry_date=expiry_date,
            )
        )

    def distribute(
        self,
        actor: Actor,
        hospital_name: str,
        patient_name: str,
        now: datetime,
        hospital_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> None:
        actors.require_staff(actor, "distribute blood")
        self._require_status(STORED, "Blood must be stored before distribution")
        now = ensure_utc(now)
        if self.is_expired(now):
            raise IllegalTransitionError("Blood has expired and cannot be distributed", self.status)
        if not hospital_name or len(hospital_name.strip()) < 2:
            raise ValidationError("Hospital name is required")
        if not patient_name or len(patient_name.strip()) < 2:
            raise ValidationError("Patient name is required")

        self.distribution = DistributionRecord(
            hospital_name=hospital_name,
            patient_name=patient_name,
            distributed_by=actor.user_id,
            distributed_at=now,
            hospital_id=hospital_id,
            patient_id=patient_id,
        )
        previous_status = self._move_to(DISTRIBUTED)
        self.events.append(
            events.BloodDistributed(
                **self._event_fields(actor, previous_status, now),
                hospital_name=hospital_name,
                patient_name=patient_name,
                units=self.units,
            )
        )

    def cancel(self, actor: Actor, reason: str, now: datetime) -> None:
        """Staff may abort at any open stage; a donor only while still scheduled."""
        if not actor.is_staff:
            if actor.user_id != self.donor_id:
                raise AuthorizationError("Not authorized to cancel this donation")
            if self.status != SCHEDULED:
                raise IllegalTransitionError("Only a scheduled donation can be cancelled by the donor", self.status)
        if self.is_terminal:
            raise IllegalTransitionError("Donation is already closed", self.status)
        if not reason or len(reason.strip()) < 5:
            raise ValidationError("Cancellation reason is required")

        now = ensure_utc(now)
        previous_status = self._move_to(CANCELLED)
        self.events.append(
            events.DonationCancelled(
                **self._event_fields(actor, previous_status, now),
                reason=reason.strip(),
            )
        )

    def add_feedback(
        self,
        actor: Actor,
        rating: int,
        would_donate_again: bool,
        now: datetime,
        comments: Optional[str] = None,
    ) -> None:
        if actor.user_id != self.donor_id:
            raise AuthorizationError("Not authorized to provide feedback for this donation")
        if self.feedback is not None:
            raise DuplicateResponseError("Feedback has already been submitted for this donation")
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")
        if comments is not None and len(comments) > 500:
            raise ValidationError("Comments cannot exceed 500 characters")

        now = ensure_utc(now)
        self.feedback = DonorFeedback(
            rating=rating,
            would_donate_again=would_donate_again,
            submitted_at=now,
            comments=comments,
        )
        self.version_number += 1
        self.events.append(
            events.FeedbackSubmitted(
                **self._event_fields(actor, self.status, now),
                rating=rating,
                would_donate_again=would_donate_again,
            )
        )

    def record_post_donation_care(
        self,
        actor: Actor,
        now: datetime,
        recovery_minutes: Optional[int] = None,
        symptoms: Optional[List[str]] = None,
        follow_up_required: bool = False,
        follow_up_date: Optional[datetime] = None,
        follow_up_notes: Optional[str] = None,
    ) -> None:
        actors.require_staff(actor, "record post-donation care")
        if self.status not in POST_COLLECTION_STATUSES:
            raise IllegalTransitionError("Post-donation care can only follow a collection", self.status)
        if recovery_minutes is not None and recovery_minutes < 0:
            raise ValidationError("Recovery time cannot be negative")
        if follow_up_required and follow_up_date is None:
            raise ValidationError("A follow-up date is required when follow-up is needed")

        now = ensure_utc(now)
        if self.post_care is None:
            self.post_care = PostDonationCare(recorded_by=actor.user_id, recorded_at=now)
        self.post_care.recorded_by = actor.user_id
        self.post_care.recorded_at = now
        self.post_care.recovery_minutes = recovery_minutes
        self.post_care.symptoms = list(symptoms or [])
        self.post_care.follow_up_required = follow_up_required
        self.post_care.follow_up_date = ensure_utc(follow_up_date)
        self.post_care.follow_up_notes = follow_up_notes
        self.version_number += 1
        self.events.append(
            events.PostDonationCareRecorded(
                **self._event_fields(actor, self.status, now),
                follow_up_required=follow_up_required,
            )
        )

    def find_recipient_response(self, recipient_id: str) -> Optional[RecipientResponse]:
        return next((r for r in self.recipient_responses if r.recipient_id == recipient_id), None)

    @property
    def review_status(self) -> str:
        return self.recipient_review.status if self.recipient_review is not None else REVIEW_PENDING

    def record_recipient_response(
        self,
        actor: Actor,
        response: str,
        now: datetime,
        associated: bool,
        notes: Optional[str] = None,
    ) -> RecipientResponse:
        """
        A recipient accepts or declines this donation, once.

        `associated` says whether the donation serves one of the recipient's
        requests or comes from a donor who responded to one of them; the
        caller works that out from the request side.
        """
        if actor.role != actors.RECIPIENT:
            raise AuthorizationError("Only recipients can respond to donations")
        if response not in RECIPIENT_RESPONSES:
            raise ValidationError("Response must be accept or decline")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"notes cannot exceed {MAX_NOTES_LENGTH} characters")
        if not associated:
            raise AuthorizationError("Not authorized to respond to this donation")
        if self.find_recipient_response(actor.user_id) is not None:
            raise DuplicateResponseError("You have already responded to this donation")

        now = ensure_utc(now)
        entry = RecipientResponse(
            recipient_id=actor.user_id,
            response=RECIPIENT_RESPONSES[response],
            responded_at=now,
            notes=notes,
        )
        self.recipient_responses.append(entry)
        self.version_number += 1
        self.events.append(
            events.RecipientResponded(
                **self._event_fields(actor, self.status, now),
                recipient_id=actor.user_id,
                response=entry.response,
            )
        )
        return entry

    def set_recipient_review(self, actor: Actor, status: str, now: datetime, notes: Optional[str] = None) -> None:
        """Staff decision on the recipients' verdicts; a later decision replaces an earlier one."""
        actors.require_staff(actor, "review recipient responses")
        if status not in REVIEW_STATUSES:
            raise ValidationError("Status must be accepted or declined")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"notes cannot exceed {MAX_NOTES_LENGTH} characters")

        now = ensure_utc(now)
        previous_review = self.review_status
        if self.recipient_review is None:
            self.recipient_review = RecipientReview(status=status, decided_by=actor.user_id, decided_at=now)
        self.recipient_review.status = status
        self.recipient_review.decided_by = actor.user_id
        self.recipient_review.decided_at = now
        self.recipient_review.notes = notes
        self.version_number += 1
        self.events.append(
            events.RecipientReviewSet(
                **self._event_fields(actor, self.status, now),
                previous_review=previous_review,
                review=status,
            )
        )
