"""
Shared enums, collection names and the request actor.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Category(str, Enum):
    PHONE = 'PHONE'
    ID = 'ID'
    WALLET = 'WALLET'
    BAG = 'BAG'
    KEYS = 'KEYS'
    OTHER = 'OTHER'


class LostReportStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    CLAIMED = 'CLAIMED'
    RETURNED = 'RETURNED'
    EXPIRED = 'EXPIRED'


class FoundReportStatus(str, Enum):
    UNCLAIMED = 'UNCLAIMED'
    MATCHED = 'MATCHED'
    RETURNED = 'RETURNED'
    EXPIRED = 'EXPIRED'


class ClaimStatus(str, Enum):
    PENDING = 'PENDING'
    VERIFIED = 'VERIFIED'
    RETURNED = 'RETURNED'
    REJECTED = 'REJECTED'
    DISPUTED = 'DISPUTED'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'


class DisputeStatus(str, Enum):
    OPEN = 'OPEN'
    UNDER_REVIEW = 'UNDER_REVIEW'
    RESOLVED_OWNER = 'RESOLVED_OWNER'
    RESOLVED_FINDER = 'RESOLVED_FINDER'
    DISMISSED = 'DISMISSED'


class QuestionStrength(str, Enum):
    WEAK = 'WEAK'
    MODERATE = 'MODERATE'
    STRONG = 'STRONG'


class TrustLevel(str, Enum):
    SUSPENDED = 'SUSPENDED'
    RESTRICTED = 'RESTRICTED'
    NEW = 'NEW'
    ESTABLISHED = 'ESTABLISHED'
    TRUSTED = 'TRUSTED'


class Role(str, Enum):
    CITIZEN = 'citizen'
    COOP_STAFF = 'coop_staff'
    ADMIN = 'admin'


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value)
DISPUTE_OUTCOMES = (
    DisputeStatus.RESOLVED_OWNER.value,
    DisputeStatus.RESOLVED_FINDER.value,
    DisputeStatus.DISMISSED.value,
)

# Firestore collections
LOST_REPORTS = 'lost_reports'
FOUND_REPORTS = 'found_reports'
REPORT_SECRETS = 'report_secrets'
CLAIMS = 'claims'
CLAIM_LOCKS = 'claim_locks'
DISPUTES = 'disputes'
TRUST_SCORES = 'trust_scores'
TRUST_LEDGER = 'trust_ledger'
AUDIT_LOGS = 'audit_logs'

SYSTEM_ACTOR_ID = 'system'


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved by the identity collaborator."""
    user_id: str
    role: Role = Role.CITIZEN
    cooperative_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_coop_staff(self) -> bool:
        return self.role == Role.COOP_STAFF


SYSTEM_ACTOR = Actor(user_id=SYSTEM_ACTOR_ID, role=Role.ADMIN)
