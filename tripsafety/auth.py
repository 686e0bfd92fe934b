from dataclasses import dataclass
from typing import Optional

from .errors import AuthorizationError

REVIEWER_ROLES = ("admin", "safety_reviewer")


@dataclass(frozen=True)
class Reviewer:
    id: str
    role: str


def require_reviewer(reviewer: Optional[Reviewer]) -> Reviewer:
    """Reject calls that do not come from an authenticated safety reviewer."""
    if reviewer is None or not reviewer.id:
        raise AuthorizationError("Reviewer identity required")
    if reviewer.role not in REVIEWER_ROLES:
        raise AuthorizationError(f"Role '{reviewer.role}' may not perform review actions")
    return reviewer
