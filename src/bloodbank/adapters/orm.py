import logging
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.orm import registry, relationship
from sqlalchemy.types import TypeDecorator

from bloodbank.domain import blood_request, donation, users
from bloodbank.domain.clock import ensure_utc

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


class UTCDateTime(TypeDecorator):
    """Stores UTC and always hands back timezone-aware datetimes, SQLite included."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = ensure_utc(value)
        if value is not None and dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


user_accounts = Table(
    "users",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("role", String(32), nullable=False),
    Column("name", String(255), nullable=False),
    Column("email", String(255)),
    Column("phone", String(32)),
    Column("blood_type", String(3)),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("is_available", Boolean, nullable=False, default=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("has_medical_restriction", Boolean, nullable=False, default=False),
    Column("last_donation_at", UTCDateTime),
    Column("total_donations", Integer, nullable=False, server_default="0"),
    Column("total_units", Integer, nullable=False, server_default="0"),
    Column("lives_saved", Integer, nullable=False, server_default="0"),
    Column("rating_total", Integer, nullable=False, server_default="0"),
    Column("rating_count", Integer, nullable=False, server_default="0"),
    Index("ix_users_blood_type_location", "blood_type", "latitude", "longitude"),
)

blood_requests = Table(
    "blood_requests",
    metadata,
    Column("request_id", String(64), primary_key=True),
    Column("requester_id", String(64), nullable=False, index=True),
    Column("requester_name", String(255), nullable=False),
    Column("requester_phone", String(32), nullable=False),
    Column("requester_email", String(255), nullable=False),
    Column("patient_name", String(255), nullable=False),
    Column("patient_age", Integer, nullable=False),
    Column("patient_gender", String(16), nullable=False),
    Column("patient_blood_type", String(3), nullable=False),
    Column("blood_type", String(3), nullable=False),
    Column("blood_product", String(32), nullable=False),
    Column("units", Integer, nullable=False),
    Column("urgency", String(16), nullable=False),
    Column("medical_reason", String(32), nullable=False),
    Column("medical_reason_description", Text),
    Column("hospital_name", String(255), nullable=False),
    Column("hospital_address", String(255)),
    Column("required_by", UTCDateTime, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("latitude", Float, nullable=False),
    Column("city", String(255), nullable=False),
    Column("state", String(255), nullable=False),
    Column("is_emergency", Boolean, nullable=False, default=False),
    Column("additional_notes", Text),
    Column("status", String(16), nullable=False, index=True),
    Column("confirmed_donor_id", String(64)),
    Column("confirmed_at", UTCDateTime),
    Column("donation_date", UTCDateTime),
    Column("donation_time", String(16)),
    Column("donation_location", String(255)),
    Column("completed_at", UTCDateTime),
    Column("actual_units_received", Integer, nullable=False, server_default="0"),
    Column("completion_notes", Text),
    Column("cancellation_reason", Text),
    Column("view_count", Integer, nullable=False, server_default="0"),
    Column("response_count", Integer, nullable=False, server_default="0"),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("version_number", Integer, nullable=False, server_default="0"),
)

# Composite key: a racing second response from the same donor fails on insert
matched_donors = Table(
    "matched_donors",
    metadata,
    Column("request_id", String(64), ForeignKey("blood_requests.request_id"), primary_key=True),
    Column("donor_id", String(64), primary_key=True),
    Column("donor_name", String(255), nullable=False),
    Column("donor_phone", String(32)),
    Column("status", String(16), nullable=False),
    Column("matched_at", UTCDateTime, nullable=False),
    Column("notes", Text),
)

donations = Table(
    "donations",
    metadata,
    Column("donation_id", String(64), primary_key=True),
    Column("donor_id", String(64), nullable=False, index=True),
    Column("donor_name", String(255), nullable=False),
    Column("donor_phone", String(32), nullable=False),
    Column("donor_email", String(255)),
    Column("donor_blood_type", String(3), nullable=False),
    Column("request_id", String(64), ForeignKey("blood_requests.request_id"), index=True),
    Column("donation_type", String(32), nullable=False),
    Column("units", Integer, nullable=False),
    Column("scheduled_at", UTCDateTime, nullable=False),
    Column("collection_site", String(255), nullable=False),
    Column("additional_notes", Text),
    Column("eligibility_warning", Text),
    Column("status", String(16), nullable=False, index=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("version_number", Integer, nullable=False, server_default="0"),
)


def _donation_fk():
    return Column("donation_id", String(64), ForeignKey("donations.donation_id"), primary_key=True)


health_checks = Table(
    "donation_health_checks",
    metadata,
    _donation_fk(),
    Column("systolic", Integer),
    Column("diastolic", Integer),
    Column("heart_rate", Integer),
    Column("temperature", Float),
    Column("hemoglobin", Float),
    Column("weight", Float),
    Column("is_eligible", Boolean, nullable=False),
    Column("notes", Text),
    Column("performed_by", String(64), nullable=False),
    Column("performed_at", UTCDateTime, nullable=False),
)

collection_processes = Table(
    "donation_collections",
    metadata,
    _donation_fk(),
    Column("start_time", UTCDateTime, nullable=False),
    Column("end_time", UTCDateTime),
    Column("duration_minutes", Integer),
    Column("phlebotomist_id", String(64), nullable=False),
    Column("collection_site", String(255), nullable=False),
    Column("collection_method", String(16), nullable=False),
    Column("complications", JSON),
    Column("notes", Text),
)

post_donation_care = Table(
    "donation_post_care",
    metadata,
    _donation_fk(),
    Column("recovery_minutes", Integer),
    Column("symptoms", JSON),
    Column("follow_up_required", Boolean, nullable=False, default=False),
    Column("follow_up_date", UTCDateTime),
    Column("follow_up_notes", Text),
    Column("recorded_by", String(64), nullable=False),
    Column("recorded_at", UTCDateTime, nullable=False),
)

lab_tests = Table(
    "donation_lab_tests",
    metadata,
    _donation_fk(),
    Column("hiv", String(16), nullable=False),
    Column("hepatitis_b", String(16), nullable=False),
    Column("hepatitis_c", String(16), nullable=False),
    Column("syphilis", String(16), nullable=False),
    Column("malaria", String(16), nullable=False),
    Column("is_suitable", Boolean, nullable=False),
    Column("tested_by", String(64), nullable=False),
    Column("tested_at", UTCDateTime, nullable=False),
)

storage_records = Table(
    "donation_storage",
    metadata,
    _donation_fk(),
    Column("storage_location", String(255), nullable=False),
    Column("storage_temperature", Float),
    Column("batch_number", String(16), nullable=False, unique=True),
    Column("stored_at", UTCDateTime, nullable=False),
    Column("expiry_date", UTCDateTime, nullable=False),
)

distribution_records = Table(
    "donation_distributions",
    metadata,
    _donation_fk(),
    Column("hospital_name", String(255), nullable=False),
    Column("hospital_id", String(64)),
    Column("patient_name", String(255), nullable=False),
    Column("patient_id", String(64)),
    Column("distributed_by", String(64), nullable=False),
    Column("distributed_at", UTCDateTime, nullable=False),
)

donor_feedback = Table(
    "donation_feedback",
    metadata,
    _donation_fk(),
    Column("rating", Integer, nullable=False),
    Column("comments", Text),
    Column("would_donate_again", Boolean, nullable=False),
    Column("submitted_at", UTCDateTime, nullable=False),
)

recipient_responses = Table(
    "donation_recipient_responses",
    metadata,
    Column("donation_id", String(64), ForeignKey("donations.donation_id"), primary_key=True),
    Column("recipient_id", String(64), primary_key=True),
    Column("response", String(16), nullable=False),
    Column("notes", Text),
    Column("responded_at", UTCDateTime, nullable=False),
)

recipient_reviews = Table(
    "donation_recipient_reviews",
    metadata,
    _donation_fk(),
    Column("status", String(16), nullable=False),
    Column("notes", Text),
    Column("decided_by", String(64), nullable=False),
    Column("decided_at", UTCDateTime, nullable=False),
)


def _one_to_one(cls):
    return relationship(cls, uselist=False, cascade="all, delete-orphan", lazy="selectin")


def start_mappers():
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(users.UserAccount, user_accounts)

    matched_donors_mapper = mapper_registry.map_imperatively(blood_request.MatchedDonor, matched_donors)
    mapper_registry.map_imperatively(
        blood_request.BloodRequest,
        blood_requests,
        properties={
            "matched_donors": relationship(
                matched_donors_mapper,
                cascade="all, delete-orphan",
                order_by=matched_donors.c.matched_at,
                lazy="selectin",
            ),
        },
    )

    mapper_registry.map_imperatively(
        donation.Donation,
        donations,
        properties={
            "health_check": _one_to_one(mapper_registry.map_imperatively(donation.HealthCheck, health_checks)),
            "collection": _one_to_one(
                mapper_registry.map_imperatively(donation.CollectionProcess, collection_processes)
            ),
            "post_care": _one_to_one(
                mapper_registry.map_imperatively(donation.PostDonationCare, post_donation_care)
            ),
            "testing": _one_to_one(mapper_registry.map_imperatively(donation.LabTesting, lab_tests)),
            "storage": _one_to_one(mapper_registry.map_imperatively(donation.StorageRecord, storage_records)),
            "distribution": _one_to_one(
                mapper_registry.map_imperatively(donation.DistributionRecord, distribution_records)
            ),
            "feedback": _one_to_one(mapper_registry.map_imperatively(donation.DonorFeedback, donor_feedback)),
            "recipient_responses": relationship(
                mapper_registry.map_imperatively(donation.RecipientResponse, recipient_responses),
                cascade="all, delete-orphan",
                order_by=recipient_responses.c.responded_at,
                lazy="selectin",
            ),
            "recipient_review": _one_to_one(
                mapper_registry.map_imperatively(donation.RecipientReview, recipient_reviews)
            ),
        },
    )


@event.listens_for(blood_request.BloodRequest, "load")
def receive_request_load(request, _):
    request.events = []


@event.listens_for(donation.Donation, "load")
def receive_donation_load(record, _):
    record.events = []
