from dataclasses import dataclass

from bloodbank.domain.exceptions import AuthorizationError

DONOR = "donor"
RECIPIENT = "recipient"
MEDICAL_ADMIN = "medical_admin"
SYSTEM_ADMIN = "system_admin"
SYSTEM = "system"

ROLES = (DONOR, RECIPIENT, MEDICAL_ADMIN, SYSTEM_ADMIN, SYSTEM)
STAFF_ROLES = (MEDICAL_ADMIN, SYSTEM_ADMIN)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a command: who they are and in which role."""
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


# Used for time-driven transitions nobody triggered by hand
SYSTEM_ACTOR = Actor(user_id="system", role=SYSTEM)


def require_staff(actor: Actor, action: str) -> None:
    if not actor.is_staff:
        raise AuthorizationError(f"Only medical staff may {action}")


def require_owner_or_staff(actor: Actor, owner_id: str, action: str) -> None:
    if actor.is_staff or actor.user_id == owner_id:
        return
    raise AuthorizationError(f"Not authorized to {action}")
