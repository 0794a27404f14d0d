from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    REQUIRES_PAYMENT_METHOD = "REQUIRES_PAYMENT_METHOD"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# No transition leaves these except a reroute, which creates a new intent.
TERMINAL_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.REFUNDED})
# What a polling consumer waits for.
FINAL_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.REFUNDED})


class Provider(str, Enum):
    STRIPE = "STRIPE"
    ADYEN = "ADYEN"
    MASTERCARD = "MASTERCARD"
    PAYPAL = "PAYPAL"
    DEMO = "DEMO"


class ReasonCode(str, Enum):
    AUTO_SELECTED = "AUTO_SELECTED"
    EXPLICIT_SELECTED = "EXPLICIT_SELECTED"
    DEMO_MODE = "DEMO_MODE"
    USER_RETRY = "USER_RETRY"
    USER_RETRY_OTHER_PROVIDER = "USER_RETRY_OTHER_PROVIDER"
    MERCHANT_FORCE_PROVIDER = "MERCHANT_FORCE_PROVIDER"


AUTO = "AUTO"
ProviderPreference = Literal["AUTO", "STRIPE", "ADYEN", "MASTERCARD", "PAYPAL", "DEMO"]


class PaymentIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    merchantId: str
    amountMinor: int
    currency: str
    description: Optional[str] = None
    status: PaymentStatus = PaymentStatus.CREATED
    provider: Provider
    providerRef: Optional[str] = None
    idempotencyKey: Optional[str] = None
    routingDecisionId: str
    routingReasonCode: str
    rootPaymentIntentId: str
    attemptNumber: int = 1
    failureReason: Optional[str] = None
    version: int = 0
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class Candidate(BaseModel):
    provider: Provider
    outcome: Literal["selected", "skipped", "excluded", "unselectable"]
    reason: Optional[str] = None


class RoutingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    intentId: str
    merchantId: str
    chosenProvider: Provider
    reasonCode: str
    candidates: List[Candidate] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class ProviderConfig(BaseModel):
    provider: Provider
    enabled: bool = False
    config: Dict[str, str] = Field(default_factory=dict)
    missingFields: List[str] = Field(default_factory=list)
    scope: Literal["global", "merchant"] = "global"


class MerchantRouting(BaseModel):
    merchantId: str
    forceProvider: ProviderPreference = AUTO
    providers: List[ProviderConfig] = Field(default_factory=list)


class ProviderConfigFile(BaseModel):
    providers: List[ProviderConfig]
    merchants: List[MerchantRouting] = Field(default_factory=list)


class ProviderStatus(BaseModel):
    provider: Provider
    configured: bool
    enabled: bool
    healthy: bool
    selectable: bool
    reason: str
    circuitState: str = "CLOSED"


class CreateIntentRequest(BaseModel):
    amountMinor: int
    currency: str
    description: Optional[str] = Field(default=None, max_length=500)
    providerPreference: ProviderPreference = AUTO

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()


class RerouteRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=200)
    provider: Optional[Provider] = None


class DemoAuthorizeRequest(BaseModel):
    cardNumber: Optional[str] = None
    expMonth: Optional[int] = None
    expYear: Optional[int] = None
    cvv: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=200)


class ProviderEvent(BaseModel):
    type: Literal["requires_payment_method", "processing", "succeeded", "failed", "refunded"]
    providerRef: Optional[str] = None
    reason: Optional[str] = None


class IntentCreated(BaseModel):
    intentId: str
    status: PaymentStatus
    provider: Provider
    routingDecisionId: str
    routingReasonCode: str
    checkoutConfig: Dict[str, Any] = Field(default_factory=dict)


class IntentWithCheckout(BaseModel):
    paymentIntent: PaymentIntent
    checkoutConfig: Dict[str, Any] = Field(default_factory=dict)


class MerchantProviderConfigRequest(BaseModel):
    enabled: bool = True
    config: Dict[str, str] = Field(default_factory=dict)


class MerchantRoutingRequest(BaseModel):
    forceProvider: ProviderPreference = AUTO


class PaymentEventType(str, Enum):
    PROVIDER_CREATE_SESSION_SUCCEEDED = "PROVIDER_CREATE_SESSION_SUCCEEDED"
    PROVIDER_CREATE_SESSION_FAILED = "PROVIDER_CREATE_SESSION_FAILED"
    PAYMENT_REQUIRES_PAYMENT_METHOD = "PAYMENT_REQUIRES_PAYMENT_METHOD"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_SUCCEEDED = "REFUND_SUCCEEDED"


class PaymentEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    intentId: str
    merchantId: str
    provider: Provider
    type: PaymentEventType
    payloadHash: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
