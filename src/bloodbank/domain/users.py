from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from bloodbank.domain import actors


@dataclass(eq=False)
class UserAccount:
    user_id: str
    role: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    blood_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_available: bool = True
    is_active: bool = True
    has_medical_restriction: bool = False
    last_donation_at: Optional[datetime] = None
    # Statistics - only ever changed through additive repository updates
    total_donations: int = 0
    total_units: int = 0
    lives_saved: int = 0
    rating_total: int = 0
    rating_count: int = 0

    @property
    def is_staff(self) -> bool:
        return self.role in actors.STAFF_ROLES

    @property
    def average_rating(self) -> Optional[float]:
        if not self.rating_count:
            return None
        return round(self.rating_total / self.rating_count, 2)


@dataclass(frozen=True)
class DonorSummary:
    """What the donor locator returns for each candidate."""
    donor_id: str
    name: str
    phone: Optional[str]
    blood_type: str
    distance_km: float
