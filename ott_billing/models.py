from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

class CheckoutReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    plan_id: str = Field(min_length=1, validation_alias=AliasChoices("planId", "plan_id"))
    interval: Literal["month", "year"] = "month"

class ChangePlanReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    plan_id: str = Field(min_length=1, validation_alias=AliasChoices("planId", "plan_id"))
    interval: Literal["month", "year"] = "month"

class CheckoutResp(BaseModel):
    sessionId: str
    redirectUrl: str

class CheckoutConfirmReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: str = Field(min_length=1, validation_alias=AliasChoices("sessionId", "session_id"))

class EntitlementOut(BaseModel):
    planId: Optional[str] = None
    status: str
    periodStart: Optional[int] = None
    periodEnd: Optional[int] = None
    autoRenew: bool = False
    subscriptionId: Optional[str] = None
    cancelledAt: Optional[int] = None
    hasAccess: bool = False

class EntitlementResp(BaseModel):
    entitlement: EntitlementOut

class BillingRecordOut(BaseModel):
    subscriptionId: str
    planId: Optional[str] = None
    status: Optional[str] = None
    periodStart: Optional[int] = None
    periodEnd: Optional[int] = None
    amountCents: Optional[int] = None
    currency: Optional[str] = None
    interval: Optional[str] = None
    cancelledAt: Optional[int] = None
    createdAt: Optional[int] = None
    updatedAt: Optional[int] = None

class SubscriptionOverviewResp(BaseModel):
    entitlement: EntitlementOut
    billingRecords: List[BillingRecordOut] = Field(default_factory=list)

class SubscriptionStatusResp(BaseModel):
    hasActiveSubscription: bool
    entitlement: EntitlementOut

class PlanOut(BaseModel):
    planId: str
    name: str
    description: str = ""
    currency: str = "usd"
    amountCents: Dict[str, int] = Field(default_factory=dict)
    intervals: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)

class PlansResp(BaseModel):
    plans: List[PlanOut]

class WebhookAck(BaseModel):
    received: bool = True
    kind: str
    outcome: str
