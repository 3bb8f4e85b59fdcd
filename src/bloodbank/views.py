"""
Views for read operations - separate from command/write path.

Request reads go through the aggregate so that an overdue pending request
is expired before it is shown; any such change is committed and its events
are left on the unit of work for the caller to dispatch.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select

import config
from bloodbank.adapters import orm
from bloodbank.domain import actors
from bloodbank.domain.actors import Actor
from bloodbank.domain.blood_request import BloodRequest
from bloodbank.domain.clock import utcnow
from bloodbank.domain.donation import Donation
from bloodbank.domain.eligibility import check_eligibility
from bloodbank.domain.exceptions import NotFoundError
from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _request_dict(request: BloodRequest) -> Dict[str, Any]:
    return {
        "request_id": request.request_id,
        "requester": {
            "id": request.requester_id,
            "name": request.requester_name,
            "phone": request.requester_phone,
            "email": request.requester_email,
        },
        "patient": {
            "name": request.patient_name,
            "age": request.patient_age,
            "gender": request.patient_gender,
            "blood_type": request.patient_blood_type,
        },
        "blood_type": request.blood_type,
        "blood_product": request.blood_product,
        "units": request.units,
        "urgency": request.urgency,
        "is_emergency": request.is_emergency,
        "medical_reason": request.medical_reason,
        "medical_reason_description": request.medical_reason_description,
        "hospital": {
            "name": request.hospital_name,
            "address": request.hospital_address,
            "city": request.city,
            "state": request.state,
            "longitude": request.longitude,
            "latitude": request.latitude,
        },
        "required_by": _iso(request.required_by),
        "additional_notes": request.additional_notes,
        "status": request.status,
        "matched_donors": [
            {
                "donor_id": m.donor_id,
                "donor_name": m.donor_name,
                "donor_phone": m.donor_phone,
                "status": m.status,
                "matched_at": _iso(m.matched_at),
                "notes": m.notes,
            }
            for m in request.matched_donors
        ],
        "confirmed_donor": {
            "donor_id": request.confirmed_donor_id,
            "confirmed_at": _iso(request.confirmed_at),
            "donation_date": _iso(request.donation_date),
            "donation_time": request.donation_time,
            "donation_location": request.donation_location,
        }
        if request.confirmed_donor_id
        else None,
        "completion": {
            "completed_at": _iso(request.completed_at),
            "actual_units_received": request.actual_units_received,
            "notes": request.completion_notes,
        },
        "cancellation_reason": request.cancellation_reason,
        "view_count": request.view_count,
        "response_count": request.response_count,
        "created_at": _iso(request.created_at),
        "expires_at": _iso(request.expires_at),
        "version_number": request.version_number,
    }


def get_request(request_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """Fetch one request, expiring it if overdue and counting the view."""
    with uow:
        request = uow.requests.get(request_id, for_update=True)
        if request is None:
            raise NotFoundError(f"Blood request {request_id} not found")
        request.check_expiry(utcnow())
        request.record_view()
        uow.commit()
        # serialize inside the session so expired attributes can reload
        return _request_dict(request)


def list_requests(
    uow: AbstractUnitOfWork,
    status: Optional[str] = None,
    blood_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    now = utcnow()
    with uow:
        requests = uow.requests.list(status=status, blood_type=blood_type, limit=limit, offset=offset)
        expired = [r for r in requests if r.check_expiry(now)]
        if expired:
            logger.info(f"Expired {len(expired)} requests while listing")
            uow.commit()
        items = [_request_dict(r) for r in requests if not status or r.status == status]

    return {"limit": limit, "offset": offset, "count": len(items), "requests": items}


def _donation_dict(record: Donation) -> Dict[str, Any]:
    health = record.health_check
    collection = record.collection
    care = record.post_care
    testing = record.testing
    storage = record.storage
    distribution = record.distribution
    feedback = record.feedback
    review = record.recipient_review
    return {
        "donation_id": record.donation_id,
        "donor": {
            "id": record.donor_id,
            "name": record.donor_name,
            "phone": record.donor_phone,
            "email": record.donor_email,
            "blood_type": record.donor_blood_type,
        },
        "request_id": record.request_id,
        "donation_type": record.donation_type,
        "units": record.units,
        "scheduled_at": _iso(record.scheduled_at),
        "collection_site": record.collection_site,
        "additional_notes": record.additional_notes,
        "eligibility_warning": record.eligibility_warning,
        "status": record.status,
        "health_check": {
            "systolic": health.systolic,
            "diastolic": health.diastolic,
            "heart_rate": health.heart_rate,
            "temperature": health.temperature,
            "hemoglobin": health.hemoglobin,
            "weight": health.weight,
            "is_eligible": health.is_eligible,
            "notes": health.notes,
            "performed_by": health.performed_by,
            "performed_at": _iso(health.performed_at),
        }
        if health
        else None,
        "collection": {
            "start_time": _iso(collection.start_time),
            "end_time": _iso(collection.end_time),
            "duration_minutes": collection.duration_minutes,
            "phlebotomist_id": collection.phlebotomist_id,
            "collection_site": collection.collection_site,
            "collection_method": collection.collection_method,
            "complications": list(collection.complications or []),
            "notes": collection.notes,
        }
        if collection
        else None,
        "post_donation_care": {
            "recovery_minutes": care.recovery_minutes,
            "symptoms": list(care.symptoms or []),
            "follow_up_required": care.follow_up_required,
            "follow_up_date": _iso(care.follow_up_date),
            "follow_up_notes": care.follow_up_notes,
        }
        if care
        else None,
        "testing": dict(
            testing.results,
            is_suitable=testing.is_suitable,
            tested_by=testing.tested_by,
            tested_at=_iso(testing.tested_at),
        )
        if testing
        else None,
        "storage": {
            "storage_location": storage.storage_location,
            "storage_temperature": storage.storage_temperature,
            "batch_number": storage.batch_number,
            "stored_at": _iso(storage.stored_at),
            "expiry_date": _iso(storage.expiry_date),
        }
        if storage
        else None,
        "distribution": {
            "hospital_name": distribution.hospital_name,
            "hospital_id": distribution.hospital_id,
            "patient_name": distribution.patient_name,
            "patient_id": distribution.patient_id,
            "distributed_by": distribution.distributed_by,
            "distributed_at": _iso(distribution.distributed_at),
        }
        if distribution
        else None,
        "feedback": {
            "rating": feedback.rating,
            "comments": feedback.comments,
            "would_donate_again": feedback.would_donate_again,
            "submitted_at": _iso(feedback.submitted_at),
        }
        if feedback
        else None,
        "recipient_review": {
            "status": record.review_status,
            "notes": review.notes if review else None,
            "decided_by": review.decided_by if review else None,
            "decided_at": _iso(review.decided_at) if review else None,
        },
        "created_at": _iso(record.created_at),
        "version_number": record.version_number,
    }


def get_donation(donation_id: str, actor: Actor, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        record = uow.donations.get(donation_id)
        if record is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        actors.require_owner_or_staff(actor, record.donor_id, "view this donation")
        return _donation_dict(record)


def list_recipient_responses(donation_id: str, actor: Actor, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    actors.require_staff(actor, "view recipient responses")
    with uow:
        record = uow.donations.get(donation_id)
        if record is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        responses = [
            {
                "recipient_id": r.recipient_id,
                "response": r.response,
                "notes": r.notes,
                "responded_at": _iso(r.responded_at),
            }
            for r in record.recipient_responses
        ]
        return {"donation_id": donation_id, "review_status": record.review_status, "responses": responses}


def list_donations(
    uow: AbstractUnitOfWork,
    donor_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """Summary rows straight from the donations table."""
    table = orm.donations
    stmt = select(
        table.c.donation_id,
        table.c.donor_id,
        table.c.donor_name,
        table.c.donation_type,
        table.c.units,
        table.c.status,
        table.c.scheduled_at,
        table.c.request_id,
    ).order_by(table.c.scheduled_at.desc())
    if donor_id:
        stmt = stmt.where(table.c.donor_id == donor_id)
    if status:
        stmt = stmt.where(table.c.status == status)

    with uow:
        rows = uow.session.execute(stmt.limit(limit).offset(offset)).all()

    items = [
        {
            "donation_id": row.donation_id,
            "donor_id": row.donor_id,
            "donor_name": row.donor_name,
            "donation_type": row.donation_type,
            "units": row.units,
            "status": row.status,
            "scheduled_at": _iso(row.scheduled_at),
            "request_id": row.request_id,
        }
        for row in rows
    ]
    return {"limit": limit, "offset": offset, "count": len(items), "donations": items}


def get_donor_statistics(donor_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    """Donor totals, average rating and current eligibility."""
    now = utcnow()
    with uow:
        donor = uow.users.get(donor_id)
        if donor is None:
            raise NotFoundError(f"User {donor_id} not found")
        by_status = dict(
            uow.session.execute(
                select(orm.donations.c.status, func.count())
                .where(orm.donations.c.donor_id == donor_id)
                .group_by(orm.donations.c.status)
            ).all()
        )
        eligibility = check_eligibility(donor, now, config.get_donation_interval_days())
        return {
            "donor_id": donor.user_id,
            "name": donor.name,
            "blood_type": donor.blood_type,
            "total_donations": donor.total_donations,
            "total_units": donor.total_units,
            "lives_saved": donor.lives_saved,
            "average_rating": donor.average_rating,
            "rating_count": donor.rating_count,
            "last_donation_at": _iso(donor.last_donation_at),
            "donations_by_status": by_status,
            "can_donate": eligibility.can_donate,
            "eligibility_reason": eligibility.reason,
            "next_eligible_at": _iso(eligibility.next_eligible_at),
        }
