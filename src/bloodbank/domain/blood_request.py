"""Blood request aggregate and its matched-donor child entities."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from bloodbank.domain import actors, events
from bloodbank.domain.actors import Actor
from bloodbank.domain.clock import ensure_utc
from bloodbank.domain.compatibility import validate_blood_type
from bloodbank.domain.eligibility import EligibilityResult
from bloodbank.domain.exceptions import (
    AuthorizationError,
    DuplicateResponseError,
    IllegalTransitionError,
    ValidationError,
)
from bloodbank.domain.users import UserAccount

PENDING = "pending"
MATCHED = "matched"
CONFIRMED = "confirmed"
FULFILLED = "fulfilled"
COMPLETED = "completed"
CANCELLED = "cancelled"
EXPIRED = "expired"

# donors may still respond while the request is in one of these
OPEN_STATUSES = (PENDING, MATCHED, CONFIRMED)
TERMINAL_STATUSES = (COMPLETED, FULFILLED, CANCELLED, EXPIRED)
STAFF_SETTABLE_STATUSES = (PENDING, MATCHED, CONFIRMED, FULFILLED, COMPLETED, CANCELLED)
# fulfilled and completed are both the terminal "satisfied" step
_PROGRESS_RANK = {PENDING: 0, MATCHED: 1, CONFIRMED: 2, FULFILLED: 3, COMPLETED: 3}

URGENCY_LEVELS = ("low", "medium", "high", "critical")
BLOOD_PRODUCTS = ("whole_blood", "red_cells", "platelets", "plasma")
MEDICAL_REASONS = ("surgery", "accident", "disease", "childbirth", "cancer", "other")
GENDERS = ("male", "female", "other")

MATCH_PENDING = "pending"
MATCH_ACCEPTED = "accepted"
MATCH_DECLINED = "declined"
MATCH_COMPLETED = "completed"

MIN_UNITS, MAX_UNITS = 1, 10
MIN_REASON_LENGTH = 5
MAX_NOTES_LENGTH = 1000


@dataclass(eq=False)
class MatchedDonor:
    """A donor's response to one request, keyed by (request_id, donor_id)."""
    donor_id: str
    donor_name: str
    donor_phone: Optional[str]
    status: str
    matched_at: datetime
    notes: Optional[str] = None


def _choice(value, allowed, field_name):
    if value not in allowed:
        raise ValidationError(f"{field_name} must be one of {', '.join(allowed)}, got {value!r}")
    return value


def _notes(value, field_name, max_length=MAX_NOTES_LENGTH):
    if value is not None and len(value) > max_length:
        raise ValidationError(f"{field_name} cannot exceed {max_length} characters")
    return value


class BloodRequest:
    """One medical need for blood, from creation until it is satisfied or closed."""

    def __init__(
        self,
        request_id: str,
        requester_id: str,
        requester_name: str,
        requester_phone: str,
        requester_email: str,
        patient_name: str,
        patient_age: int,
        patient_gender: str,
        patient_blood_type: str,
        blood_type: str,
        blood_product: str,
        units: int,
        urgency: str,
        medical_reason: str,
        hospital_name: str,
        required_by: datetime,
        longitude: float,
        latitude: float,
        city: str,
        state: str,
        created_at: datetime,
        expires_at: datetime,
        medical_reason_description: Optional[str] = None,
        hospital_address: Optional[str] = None,
        is_emergency: bool = False,
        additional_notes: Optional[str] = None,
        status: str = PENDING,
    ):
        self.request_id = request_id
        self.requester_id = requester_id
        self.requester_name = requester_name
        self.requester_phone = requester_phone
        self.requester_email = requester_email
        self.patient_name = patient_name
        self.patient_age = patient_age
        self.patient_gender = patient_gender
        self.patient_blood_type = patient_blood_type
        self.blood_type = blood_type
        self.blood_product = blood_product
        self.units = units
        self.urgency = urgency
        self.medical_reason = medical_reason
        self.medical_reason_description = medical_reason_description
        self.hospital_name = hospital_name
        self.hospital_address = hospital_address
        self.required_by = ensure_utc(required_by)
        self.longitude = longitude
        self.latitude = latitude
        self.city = city
        self.state = state
        self.is_emergency = is_emergency or urgency == "critical"
        self.additional_notes = additional_notes
        self.status = status
        self.created_at = ensure_utc(created_at)
        self.expires_at = ensure_utc(expires_at)
        self.matched_donors = []  # type: List[MatchedDonor]
        self.confirmed_donor_id = None
        self.confirmed_at = None
        self.donation_date = None
        self.donation_time = None
        self.donation_location = None
        self.completed_at = None
        self.actual_units_received = 0
        self.completion_notes = None
        self.cancellation_reason = None
        self.view_count = 0
        self.response_count = 0
        self.version_number = 0
        self.events = []  # type: List[events.Event]

    def __repr__(self):
        return f"<BloodRequest {self.request_id} {self.blood_type} {self.status}>"

    def __eq__(self, other):
        if not isinstance(other, BloodRequest):
            return False
        return other.request_id == self.request_id

    def __hash__(self):
        return hash(self.request_id)

    @classmethod
    def for_requester(cls, request_id: str, requester: UserAccount, now: datetime, expiry_days: int, **details):
        """Build a request with the requester's contact details snapshotted."""
        if not requester.phone:
            raise ValidationError("Requester phone number is required. Please update the profile.")
        if not requester.email:
            raise ValidationError("Requester email is required. Please update the profile.")
        return cls(
            request_id=request_id,
            requester_id=requester.user_id,
            requester_name=requester.name,
            requester_phone=requester.phone,
            requester_email=requester.email,
            created_at=now,
            expires_at=now + timedelta(days=expiry_days),
            **details,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def confirmed_donor(self) -> Optional[MatchedDonor]:
        if self.confirmed_donor_id is None:
            return None
        return self.find_match(self.confirmed_donor_id)

    def find_match(self, donor_id: str) -> Optional[MatchedDonor]:
        return next((m for m in self.matched_donors if m.donor_id == donor_id), None)

    def create(self, actor: Actor, now: datetime) -> None:
        """
        Validate the new request and raise RequestCreated.

        The event is what triggers donor matching, after the request has
        been committed.
        """
        now = ensure_utc(now)
        if not self.patient_name or not self.patient_name.strip():
            raise ValidationError("Patient name is required")
        if not isinstance(self.patient_age, int) or not 0 <= self.patient_age <= 120:
            raise ValidationError("Patient age must be between 0 and 120")
        _choice(self.patient_gender, GENDERS, "patient_gender")
        validate_blood_type(self.patient_blood_type, "patient_blood_type")
        validate_blood_type(self.blood_type)
        _choice(self.blood_product, BLOOD_PRODUCTS, "blood_product")
        if not isinstance(self.units, int) or not MIN_UNITS <= self.units <= MAX_UNITS:
            raise ValidationError(f"Blood units must be between {MIN_UNITS} and {MAX_UNITS}")
        _choice(self.urgency, URGENCY_LEVELS, "urgency")
        _choice(self.medical_reason, MEDICAL_REASONS, "medical_reason")
        _notes(self.medical_reason_description, "medical_reason_description", 500)
        _notes(self.additional_notes, "additional_notes")
        if not self.hospital_name or not self.hospital_name.strip():
            raise ValidationError("Hospital name is required")
        if self.required_by is None or self.required_by <= now:
            raise ValidationError("Required by date must be in the future")
        if self.longitude is None or not -180 <= self.longitude <= 180:
            raise ValidationError("Longitude must be between -180 and 180")
        if self.latitude is None or not -90 <= self.latitude <= 90:
            raise ValidationError("Latitude must be between -90 and 90")
        if not self.city or not self.state:
            raise ValidationError("City and state are required")
        if self.status != PENDING:
            raise IllegalTransitionError("A new request must start as pending", self.status)

        self.events.append(
            events.RequestCreated(
                request_id=self.request_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                previous_status=None,
                status=self.status,
                occurred_at=now,
                requester_id=self.requester_id,
                blood_type=self.blood_type,
                blood_product=self.blood_product,
                units=self.units,
                urgency=self.urgency,
                hospital_name=self.hospital_name,
                city=self.city,
                state=self.state,
                longitude=self.longitude,
                latitude=self.latitude,
                required_by=self.required_by,
            )
        )

    def check_expiry(self, now: datetime) -> bool:
        """
        Force an overdue pending request into expired.

        Called whenever the request is loaded for a command or a read, and
        by the periodic sweep. Returns True if the status changed.
        """
        now = ensure_utc(now)
        if self.status != PENDING:
            return False
        if now <= self.expires_at and now <= self.required_by:
            return False

        self.status = EXPIRED
        self.version_number += 1
        self.events.append(
            events.RequestExpired(
                request_id=self.request_id,
                actor_id=actors.SYSTEM_ACTOR.user_id,
                actor_role=actors.SYSTEM_ACTOR.role,
                previous_status=PENDING,
                status=EXPIRED,
                occurred_at=now,
                requester_id=self.requester_id,
                required_by=self.required_by,
                expires_at=self.expires_at,
            )
        )
        return True

    def respond(
        self,
        donor: UserAccount,
        actor: Actor,
        response: str,
        now: datetime,
        notes: Optional[str] = None,
        eligibility: Optional[EligibilityResult] = None,
    ) -> MatchedDonor:
        """Record a donor's accept or decline. A donor can respond only once."""
        _choice(response, ("accept", "decline"), "response")
        _notes(notes, "notes", 500)
        if actor.role != actors.DONOR or actor.user_id != donor.user_id:
            raise AuthorizationError("Only the donor themselves may respond to a blood request")
        if self.status not in OPEN_STATUSES:
            raise IllegalTransitionError("Request is no longer active", self.status)
        if self.find_match(donor.user_id) is not None:
            raise DuplicateResponseError("You have already responded to this request")
        if response == "accept" and eligibility is not None and not eligibility.can_donate:
            raise ValidationError(eligibility.reason or "Donor is not currently eligible to donate")

        match = MatchedDonor(
            donor_id=donor.user_id,
            donor_name=donor.name,
            donor_phone=donor.phone,
            status=MATCH_ACCEPTED if response == "accept" else MATCH_DECLINED,
            matched_at=ensure_utc(now),
            notes=notes,
        )
        self.matched_donors.append(match)
        self.response_count += 1

        previous_status = self.status
        if response == "accept" and self.status == PENDING:
            self.status = MATCHED
        self.version_number += 1

        self.events.append(
            events.DonorResponded(
                request_id=self.request_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                previous_status=previous_status,
                status=self.status,
                occurred_at=ensure_utc(now),
                donor_id=donor.user_id,
                donor_name=donor.name,
                requester_id=self.requester_id,
                response=match.status,
                notes=notes,
            )
        )
        return match

    def confirm_donor(
        self,
        actor: Actor,
        donor_id: str,
        donation_date: datetime,
        donation_time: str,
        donation_location: str,
        now: datetime,
    ) -> None:
        actors.require_owner_or_staff(actor, self.requester_id, "confirm a donor for this request")
        if self.is_terminal:
            raise IllegalTransitionError("Cannot confirm a donor on a closed request", self.status)
        match = self.find_match(donor_id)
        if match is None:
            raise IllegalTransitionError("Donor not found in matched donors", self.status)
        if donation_date is None or not donation_time:
            raise ValidationError("Donation date and time are required")
        if not donation_location or len(donation_location.strip()) < 5:
            raise ValidationError("Donation location is required")

        now = ensure_utc(now)
        previous_status = self.status
        self.confirmed_donor_id = donor_id
        self.confirmed_at = now
        self.donation_date = ensure_utc(donation_date)
        self.donation_time = donation_time
        self.donation_location = donation_location
        match.status = MATCH_ACCEPTED
        self.status = CONFIRMED
        self.version_number += 1

        self.events.append(
            events.DonorConfirmed(
                request_id=self.request_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                previous_status=previous_status,
                status=self.status,
                occurred_at=now,
                donor_id=donor_id,
                patient_name=self.patient_name,
                donation_date=self.donation_date,
                donation_time=donation_time,
                donation_location=donation_location,
            )
        )

    def complete(self, actor: Actor, actual_units: int, now: datetime, notes: Optional[str] = None) -> None:
        actors.require_owner_or_staff(actor, self.requester_id, "complete this request")
        if self.is_terminal:
            raise IllegalTransitionError("Request is already closed", self.status)
        if not isinstance(actual_units, int) or actual_units < 0:
            raise ValidationError("Actual units received must be a non-negative integer")
        _notes(notes, "notes")

        now = ensure_utc(now)
        previous_status = self.status
        self.status = COMPLETED
        self.completed_at = now
        self.actual_units_received = actual_units
        self.completion_notes = notes
        confirmed = self.confirmed_donor
        if confirmed is not None:
            confirmed.status = MATCH_COMPLETED
        self.version_number += 1

        self.events.append(
            events.RequestCompleted(
                request_id=self.request_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                previous_status=previous_status,
                status=self.status,
                occurred_at=now,
                requester_id=self.requester_id,
                actual_units=actual_units,
                confirmed_donor_id=self.confirmed_donor_id,
            )
        )

    def cancel(self, actor: Actor, reason: str, now: datetime) -> None:
        actors.require_owner_or_staff(actor, self.requester_id, "cancel this request")
        if self.is_terminal:
            raise IllegalTransitionError("Request cannot be cancelled", self.status)
        if not reason or len(reason.strip()) < MIN_REASON_LENGTH:
            raise ValidationError("Cancellation reason is required")
        _notes(reason, "reason")

        now = ensure_utc(now)
        previous_status = self.status
        self.status = CANCELLED
        self.cancellation_reason = reason.strip()
        self.version_number += 1

        self.events.append(
            events.RequestCancelled(
                request_id=self.request_id,
                actor_id=actor.user_id,
                actor_role=actor.role,
                previous_status=previous_status,
                status=self.status,
                occurred_at=now,
                requester_id=self.requester_id,
                reason=self.cancellation_reason,
                matched_donor_ids=tuple(m.donor_id for m in self.matched_donors),
            )
        )

    def update(
        self,
        actor: Actor,
        now: datetime,
        urgency: Optional[str] = None,
        required_by: Optional[datetime] = None,
        additional_notes: Optional[str] = None,
        medical_reason_description: Optional[str] = None,
        status: Optional[str] = None,
        cancellation_reason: Optional[str] = None,
    ) -> None:
        """
        Edit urgency, deadline and notes; staff may also move the status.

        Status moves are forward-only along pending, matched, confirmed,
        fulfilled/completed. Cancelling or completing through this path
        behaves exactly like the dedicated commands. A cancellation takes its own
        reason and falls back to a staff default, never to the notes.
        """
        actors.require_owner_or_staff(actor, self.requester_id, "update this request")
        if self.is_terminal:
            raise IllegalTransitionError("Cannot update a closed request", self.status)
        if status is not None and not actor.is_staff:
            raise AuthorizationError("Only medical staff may change the request status")

        now = ensure_utc(now)
        changes = {}
        if urgency is not None:
            changes["urgency"] = _choice(urgency, URGENCY_LEVELS, "urgency")
        if required_by is not None:
            required_by = ensure_utc(required_by)
            if required_by <= now:
                raise ValidationError("Required by date must be in the future")
            changes["required_by"] = required_by
        if additional_notes is not None:
            changes["additional_notes"] = _notes(additional_notes, "additional_notes")
        if medical_reason_description is not None:
            changes["medical_reason_description"] = _notes(
                medical_reason_description, "medical_reason_description", 500
            )
        if status is not None:
            _choice(status, STAFF_SETTABLE_STATUSES, "status")
            self._check_status_move(status)
        if status == CANCELLED and cancellation_reason is not None:
            if len(cancellation_reason.strip()) < MIN_REASON_LENGTH:
                raise ValidationError("Cancellation reason is required")
        if not changes and status is None:
            raise ValidationError("No changes supplied")

        for name, value in changes.items():
            setattr(self, name, value)
        if "urgency" in changes:
            self.is_emergency = self.is_emergency or changes["urgency"] == "critical"

        previous_status = self.status
        if status in (PENDING, MATCHED, CONFIRMED, FULFILLED) and status != self.status:
            self.status = status
            if status == FULFILLED:
                self.completed_at = now
        if changes or self.status != previous_status:
            self.version_number += 1
            self.events.append(
                events.RequestUpdated(
                    request_id=self.request_id,
                    actor_id=actor.user_id,
                    actor_role=actor.role,
                    previous_status=previous_status,
                    status=self.status,
                    occurred_at=now,
                    changed_fields=changes,
                )
            )

        if status == CANCELLED:
            self.cancel(actor, reason=cancellation_reason or "Cancelled by medical staff", now=now)
        elif status == COMPLETED:
            self.complete(actor, actual_units=self.actual_units_received, now=now)

    def _check_status_move(self, target: str) -> None:
        if target == CANCELLED:
            return
        if _PROGRESS_RANK[target] < _PROGRESS_RANK[self.status]:
            raise IllegalTransitionError(f"Status cannot move back to {target}", self.status)
        if target == MATCHED and not any(m.status == MATCH_ACCEPTED for m in self.matched_donors):
            raise IllegalTransitionError("Cannot mark as matched without an accepting donor", self.status)
        if target == CONFIRMED and self.confirmed_donor_id is None:
            raise IllegalTransitionError("Cannot mark as confirmed without a confirmed donor", self.status)

    def record_view(self) -> None:
        self.view_count += 1
