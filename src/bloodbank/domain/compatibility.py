"""Red cell compatibility between recipient and donor ABO/Rh types."""

from typing import FrozenSet

from bloodbank.domain.exceptions import ValidationError

BLOOD_TYPES = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")

# recipient type -> donor types the recipient may receive from
_COMPATIBLE_DONORS = {
    "A+": frozenset({"A+", "A-", "O+", "O-"}),
    "A-": frozenset({"A-", "O-"}),
    "B+": frozenset({"B+", "B-", "O+", "O-"}),
    "B-": frozenset({"B-", "O-"}),
    "AB+": frozenset(BLOOD_TYPES),
    "AB-": frozenset({"A-", "B-", "AB-", "O-"}),
    "O+": frozenset({"O+", "O-"}),
    "O-": frozenset({"O-"}),
}


def validate_blood_type(blood_type: str, field_name: str = "blood_type") -> str:
    if blood_type not in _COMPATIBLE_DONORS:
        raise ValidationError(f"{field_name} must be one of {', '.join(BLOOD_TYPES)}, got {blood_type!r}")
    return blood_type


def compatible_donor_types(recipient_type: str) -> FrozenSet[str]:
    """Return the donor blood types a recipient of ``recipient_type`` may accept."""
    return _COMPATIBLE_DONORS[validate_blood_type(recipient_type)]


def can_receive(recipient_type: str, donor_type: str) -> bool:
    return donor_type in compatible_donor_types(recipient_type)
