from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SubscriptionPlan(str, Enum):
    FREE = "Free"
    STARTER = "Starter"
    PROFESSIONAL = "Professional"
    ENTERPRISE = "Enterprise"


def normalize_plan(plan: str | None) -> SubscriptionPlan:
    # Unknown or missing plans get the most restrictive quota.
    if not plan:
        return SubscriptionPlan.FREE
    lowered = plan.strip().lower()
    for candidate in SubscriptionPlan:
        if candidate.value.lower() == lowered:
            return candidate
    return SubscriptionPlan.FREE


class TenantIdentity(BaseModel):
    # Immutable per-request snapshot from the Tenant Authority; never persisted by the gateway.
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "_id", "id", "tenant_id"))
    database_name: str = Field(validation_alias=AliasChoices("databaseName", "database_name"))
    owner_email: str | None = Field(
        default=None, validation_alias=AliasChoices("ownerEmail", "email", "owner_email")
    )
    industry: str | None = None
    subscription_plan: str = Field(
        default=SubscriptionPlan.FREE.value,
        validation_alias=AliasChoices("subscriptionPlan", "subscription_plan"),
    )
    subscription_status: str | None = Field(
        default=None, validation_alias=AliasChoices("subscriptionStatus", "subscription_status")
    )
    client_code: str | None = Field(default=None, validation_alias=AliasChoices("clientCode", "client_code"))
    owner_name: str | None = Field(default=None, validation_alias=AliasChoices("ownerName", "owner_name"))

    @property
    def plan(self) -> SubscriptionPlan:
        return normalize_plan(self.subscription_plan)


class AccessTokenMeta(BaseModel):
    # Authority-owned token bookkeeping; the raw credential itself is never kept here.
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    expiry_date: datetime | None = Field(default=None, validation_alias=AliasChoices("expiryDate", "expiry_date"))
    created_at: datetime | None = Field(default=None, validation_alias=AliasChoices("createdAt", "created_at"))
    last_used_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("lastUsedAt", "last_used_at")
    )
    active: bool = Field(default=True, validation_alias=AliasChoices("active", "isActive"))
