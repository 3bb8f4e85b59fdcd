"""Basic donor eligibility, evaluated from the donor's account alone.

Scheduling treats a failed check as a warning; accepting a blood request
treats it as a hard stop. The clinical decision at the health check is
made by staff and recorded on the donation.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bloodbank.domain.users import UserAccount


@dataclass(frozen=True)
class EligibilityResult:
    can_donate: bool
    reason: Optional[str] = None
    next_eligible_at: Optional[datetime] = None


def next_eligible_date(last_donation_at: Optional[datetime], interval_days: int) -> Optional[datetime]:
    if last_donation_at is None:
        return None
    return last_donation_at + timedelta(days=interval_days)


def check_eligibility(donor: UserAccount, now: datetime, interval_days: int) -> EligibilityResult:
    if not donor.is_active:
        return EligibilityResult(False, "Account is not active")
    if donor.has_medical_restriction:
        return EligibilityResult(False, "Donor has a medical restriction on file")

    next_date = next_eligible_date(donor.last_donation_at, interval_days)
    if next_date is not None and now < next_date:
        days_left = (next_date - now).days + 1
        return EligibilityResult(
            False,
            f"Last donation was less than {interval_days} days ago ({days_left} days remaining)",
            next_eligible_at=next_date,
        )
    return EligibilityResult(True)
