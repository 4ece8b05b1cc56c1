from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_BUSINESS_OWNER = "ROLE_BUSINESS_OWNER"
    ROLE_USER = "ROLE_USER"

class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class ListingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class DowngradeDecisionMode(str, Enum):
    AUTO = "auto"
    ADMIN_APPROVAL = "admin_approval"

class DowngradeRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class DowngradeDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

class AuditAction(str, Enum):
    # Policy
    DOWNGRADE_POLICY_UPDATED = "DOWNGRADE_POLICY_UPDATED"

    # Downgrade workflow
    DOWNGRADE_REQUESTED = "DOWNGRADE_REQUESTED"
    DOWNGRADE_APPROVED = "DOWNGRADE_APPROVED"
    DOWNGRADE_REJECTED = "DOWNGRADE_REJECTED"
    DOWNGRADE_EXECUTED = "DOWNGRADE_EXECUTED"

    # Reconciliation
    EXPIRED_LISTING_FALLBACK_APPLIED = "EXPIRED_LISTING_FALLBACK_APPLIED"

    # Billing
    SUBSCRIPTION_CANCELLATION_SCHEDULED = "SUBSCRIPTION_CANCELLATION_SCHEDULED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

    # Route Guards
    PLAN_GATE_DENIED = "PLAN_GATE_DENIED"

class EmailTemplateAlias(str, Enum):
    DOWNGRADE_REQUESTED = "downgrade-requested"
    DOWNGRADE_APPROVED = "downgrade-approved"
    DOWNGRADE_REJECTED = "downgrade-rejected"
    PLAN_DOWNGRADED = "plan-downgraded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# RECORD MODELS
# ============================================================================

class PricingPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    price: float = Field(default=0, ge=0)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    duration_days: Optional[int] = Field(default=None, gt=0)
    features: List[str] = Field(default_factory=list)
    gallery_limit: int = Field(default=0, ge=0)
    active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_free(self) -> bool:
        return self.price <= 0

class Listing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    listing_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    name: str
    slug: str
    status: ListingStatus = ListingStatus.PENDING
    plan_id: Optional[str] = None
    featured: bool = False
    views: int = 0
    likes: int = 0
    contact: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

class DowngradeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    owner_email: Optional[str] = None
    owner_name: Optional[str] = None
    listing_id: str
    listing_name: Optional[str] = None
    current_plan_id: Optional[str] = None
    current_plan_name: Optional[str] = None
    target_plan_id: str
    target_plan_name: Optional[str] = None
    status: DowngradeRequestStatus = DowngradeRequestStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    decided_at: Optional[datetime] = None
    decided_by_id: Optional[str] = None
    decided_by_name: Optional[str] = None

class DowngradePolicyConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: DowngradeDecisionMode = DowngradeDecisionMode.AUTO
    expired_listing_plan_id: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    owner_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    owner_id: Optional[str] = None
    recipient: EmailStr
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
