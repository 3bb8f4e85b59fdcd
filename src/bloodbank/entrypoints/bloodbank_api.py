"""
Blood Bank API Entrypoint - Thin API with Command Dispatch

Request bodies are turned into commands and handed to the message bus;
reads go to views. Caller identity arrives in the X-Actor-Id and
X-Actor-Role headers, set by the authenticating gateway.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bloodbank import views
from bloodbank.adapters import orm
from bloodbank.domain import actors, commands
from bloodbank.domain.actors import Actor
from bloodbank.domain.donation import Vitals
from bloodbank.domain.exceptions import (
    AuthorizationError,
    BloodBankError,
    DuplicateResponseError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from bloodbank.service_layer import messagebus
from bloodbank.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Initialize ORM mappers (Cosmic Python pattern)
    orm.start_mappers()
    logger.info("ORM mappers initialized")
    yield


app = FastAPI(
    title="Blood Bank Lifecycle API",
    description="Blood request matching and donation pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

ERROR_STATUS = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (IllegalTransitionError, 409),
    (DuplicateResponseError, 409),
)


@app.exception_handler(BloodBankError)
async def handle_domain_error(_request, exc: BloodBankError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, IllegalTransitionError):
        body["current_status"] = exc.current_status
    return JSONResponse(status_code=status_code, content=body)


def get_uow() -> AbstractUnitOfWork:
    return SqlAlchemyUnitOfWork()


def get_actor(x_actor_id: str = Header(...), x_actor_role: str = Header(...)) -> Actor:
    if x_actor_role not in actors.ROLES or x_actor_role == actors.SYSTEM:
        raise HTTPException(status_code=400, detail=f"Unknown role {x_actor_role!r}")
    return Actor(user_id=x_actor_id, role=x_actor_role)


def _dispatch(command, uow: AbstractUnitOfWork):
    return messagebus.handle(command, uow)[0]


def _publish_read_side_changes(uow: AbstractUnitOfWork):
    """Views may expire an overdue request; its events still need handling."""
    for event in list(uow.collect_new_events()):
        messagebus.handle(event, uow)


# ---------- Request/Response models ----------

class CreateBloodRequestBody(BaseModel):
    patient_name: str
    patient_age: int
    patient_gender: str
    patient_blood_type: str
    blood_type: str
    blood_product: str
    units: int
    urgency: str
    medical_reason: str
    medical_reason_description: Optional[str] = None
    hospital_name: str
    hospital_address: Optional[str] = None
    required_by: datetime
    longitude: float
    latitude: float
    city: str
    state: str
    is_emergency: bool = False
    additional_notes: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "patient_name": "Jane Doe",
                "patient_age": 34,
                "patient_gender": "female",
                "patient_blood_type": "O-",
                "blood_type": "O-",
                "blood_product": "whole_blood",
                "units": 2,
                "urgency": "critical",
                "medical_reason": "accident",
                "hospital_name": "City General Hospital",
                "required_by": "2030-01-15T12:00:00Z",
                "longitude": 3.3792,
                "latitude": 6.5244,
                "city": "Lagos",
                "state": "Lagos",
            }
        }
    }


class UpdateBloodRequestBody(BaseModel):
    urgency: Optional[str] = None
    required_by: Optional[datetime] = None
    additional_notes: Optional[str] = None
    medical_reason_description: Optional[str] = None
    status: Optional[str] = None
    cancellation_reason: Optional[str] = None


class RespondBody(BaseModel):
    response: str
    notes: Optional[str] = None


class ConfirmDonorBody(BaseModel):
    donor_id: str
    donation_date: datetime
    donation_time: str
    donation_location: str


class CompleteRequestBody(BaseModel):
    actual_units: int
    notes: Optional[str] = None


class ReasonBody(BaseModel):
    reason: str


class ScheduleDonationBody(BaseModel):
    donation_type: str
    units: int = 1
    scheduled_at: datetime
    collection_site: str
    request_id: Optional[str] = None
    additional_notes: Optional[str] = None


class VitalsBody(BaseModel):
    systolic: Optional[int] = None
    diastolic: Optional[int] = None
    heart_rate: Optional[int] = None
    temperature: Optional[float] = None
    hemoglobin: Optional[float] = None
    weight: Optional[float] = None


class StartDonationBody(BaseModel):
    collection_site: str
    vitals: VitalsBody
    is_eligible: bool
    phlebotomist_id: Optional[str] = None
    notes: Optional[str] = None


class CompleteDonationBody(BaseModel):
    end_time: Optional[datetime] = None
    notes: Optional[str] = None


class TestResultsBody(BaseModel):
    hiv: str
    hepatitis_b: str
    hepatitis_c: str
    syphilis: str
    malaria: str


class StoreBloodBody(BaseModel):
    storage_location: str
    expiry_date: datetime
    storage_temperature: Optional[float] = None


class DistributeBloodBody(BaseModel):
    hospital_name: str
    patient_name: str
    hospital_id: Optional[str] = None
    patient_id: Optional[str] = None


class FeedbackBody(BaseModel):
    rating: int
    would_donate_again: bool
    comments: Optional[str] = None


class RecipientReviewBody(BaseModel):
    status: str
    notes: Optional[str] = None


class PostDonationCareBody(BaseModel):
    recovery_minutes: Optional[int] = None
    symptoms: List[str] = Field(default_factory=list)
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = None


class StatusResponse(BaseModel):
    id: str
    status: str


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "bloodbank-lifecycle-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/api/v1/blood-requests", status_code=201)
def create_blood_request(
    body: CreateBloodRequestBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
) -> Dict[str, str]:
    request_id = _dispatch(commands.CreateBloodRequest(actor=actor, **body.model_dump()), uow)
    logger.info(f"Blood request {request_id} created via API")
    return {"request_id": request_id, "status": "pending"}


@app.get("/api/v1/blood-requests")
def list_blood_requests(
    status: Optional[str] = None,
    blood_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = views.list_requests(uow, status=status, blood_type=blood_type, limit=limit, offset=offset)
    _publish_read_side_changes(uow)
    return result


@app.get("/api/v1/blood-requests/{request_id}")
def get_blood_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    result = views.get_request(request_id, uow)
    _publish_read_side_changes(uow)
    return result


@app.patch("/api/v1/blood-requests/{request_id}", response_model=StatusResponse)
def update_blood_request(
    request_id: str,
    body: UpdateBloodRequestBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.UpdateBloodRequest(actor=actor, request_id=request_id, **body.model_dump()), uow)
    return StatusResponse(id=request_id, status=status)


@app.post("/api/v1/blood-requests/{request_id}/respond")
def respond_to_request(
    request_id: str,
    body: RespondBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    match_status = _dispatch(
        commands.RespondToRequest(actor=actor, request_id=request_id, response=body.response, notes=body.notes),
        uow,
    )
    return {"request_id": request_id, "donor_id": actor.user_id, "response": match_status}


@app.post("/api/v1/blood-requests/{request_id}/confirm", response_model=StatusResponse)
def confirm_donor(
    request_id: str,
    body: ConfirmDonorBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.ConfirmDonor(actor=actor, request_id=request_id, **body.model_dump()), uow)
    return StatusResponse(id=request_id, status=status)


@app.post("/api/v1/blood-requests/{request_id}/complete", response_model=StatusResponse)
def complete_request(
    request_id: str,
    body: CompleteRequestBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.CompleteRequest(actor=actor, request_id=request_id, **body.model_dump()), uow)
    return StatusResponse(id=request_id, status=status)


@app.post("/api/v1/blood-requests/{request_id}/cancel", response_model=StatusResponse)
def cancel_request(
    request_id: str,
    body: ReasonBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.CancelRequest(actor=actor, request_id=request_id, reason=body.reason), uow)
    return StatusResponse(id=request_id, status=status)


@app.post("/api/v1/donations", status_code=201)
def schedule_donation(
    body: ScheduleDonationBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
) -> Dict[str, str]:
    donation_id = _dispatch(commands.ScheduleDonation(actor=actor, **body.model_dump()), uow)
    return {"donation_id": donation_id, "status": "scheduled"}


@app.get("/api/v1/donations")
def list_donations(
    donor_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    if not actor.is_staff:
        # donors only ever see their own donations
        donor_id = actor.user_id
    return views.list_donations(uow, donor_id=donor_id, status=status, limit=limit, offset=offset)


@app.get("/api/v1/donations/{donation_id}")
def get_donation(
    donation_id: str,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.get_donation(donation_id, actor, uow)


@app.post("/api/v1/donations/{donation_id}/start", response_model=StatusResponse)
def start_donation(
    donation_id: str,
    body: StartDonationBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(
        commands.StartDonation(
            actor=actor,
            donation_id=donation_id,
            phlebotomist_id=body.phlebotomist_id or actor.user_id,
            collection_site=body.collection_site,
            vitals=Vitals(**body.vitals.model_dump()),
            is_eligible=body.is_eligible,
            health_check_notes=body.notes,
        ),
        uow,
    )
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/complete", response_model=StatusResponse)
def complete_donation(
    donation_id: str,
    body: CompleteDonationBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.CompleteDonation(actor=actor, donation_id=donation_id, **body.model_dump()), uow)
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/test-results", response_model=StatusResponse)
def record_test_results(
    donation_id: str,
    body: TestResultsBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(
        commands.RecordTestResults(actor=actor, donation_id=donation_id, results=body.model_dump()), uow
    )
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/store")
def store_blood(
    donation_id: str,
    body: StoreBloodBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    batch_number = _dispatch(commands.StoreBlood(actor=actor, donation_id=donation_id, **body.model_dump()), uow)
    return {"id": donation_id, "status": "stored", "batch_number": batch_number}


@app.post("/api/v1/donations/{donation_id}/distribute", response_model=StatusResponse)
def distribute_blood(
    donation_id: str,
    body: DistributeBloodBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.DistributeBlood(actor=actor, donation_id=donation_id, **body.model_dump()), uow)
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/feedback", response_model=StatusResponse)
def submit_feedback(
    donation_id: str,
    body: FeedbackBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(
        commands.SubmitDonationFeedback(actor=actor, donation_id=donation_id, **body.model_dump()), uow
    )
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/cancel", response_model=StatusResponse)
def cancel_donation(
    donation_id: str,
    body: ReasonBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(commands.CancelDonation(actor=actor, donation_id=donation_id, reason=body.reason), uow)
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/post-care", response_model=StatusResponse)
def record_post_donation_care(
    donation_id: str,
    body: PostDonationCareBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    status = _dispatch(
        commands.RecordPostDonationCare(actor=actor, donation_id=donation_id, **body.model_dump()), uow
    )
    return StatusResponse(id=donation_id, status=status)


@app.post("/api/v1/donations/{donation_id}/respond")
def respond_to_donation(
    donation_id: str,
    body: RespondBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    response = _dispatch(
        commands.RespondToDonation(actor=actor, donation_id=donation_id, response=body.response, notes=body.notes),
        uow,
    )
    return {"donation_id": donation_id, "recipient_id": actor.user_id, "response": response}


@app.get("/api/v1/donations/{donation_id}/responses")
def list_recipient_responses(
    donation_id: str,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.list_recipient_responses(donation_id, actor, uow)


@app.put("/api/v1/donations/{donation_id}/recipient-review")
def set_recipient_review(
    donation_id: str,
    body: RecipientReviewBody,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    review = _dispatch(
        commands.SetRecipientReview(actor=actor, donation_id=donation_id, status=body.status, notes=body.notes),
        uow,
    )
    return {"donation_id": donation_id, "review_status": review}


@app.get("/api/v1/donors/{donor_id}/statistics")
def get_donor_statistics(
    donor_id: str,
    actor: Actor = Depends(get_actor),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    actors.require_owner_or_staff(actor, donor_id, "view these statistics")
    return views.get_donor_statistics(donor_id, uow)
