from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

BookingStatus = Literal[
    "PENDING",
    "MATCHED",
    "CONFIRMED",
    "IN_PROGRESS",
    "COMPLETED",
    "CANCELLED",
    "DISPUTED",
]

PaymentStatus = Literal["PENDING", "HELD_IN_ESCROW", "RELEASED", "REFUNDED", "FAILED"]

UserRole = Literal["customer", "provider", "admin"]

TriggeringParty = Literal["CUSTOMER", "PROVIDER"]

DocumentType = Literal["NIC_FRONT", "NIC_BACK", "POLICE_CLEARANCE", "MEDICAL_CERTIFICATE", "TRAINING_CERT"]

DocumentStatus = Literal["PENDING", "VERIFIED", "REJECTED"]

GatewayStatus = Literal["SUCCESS", "PENDING", "CANCELLED", "FAILED", "CHARGEDBACK"]


class UserAccount(BaseModel):
    id: str
    role: UserRole
    full_name: str
    phone: str = ""
    is_active: bool = True


class ServiceCategory(BaseModel):
    id: str
    slug: str
    name: str
    is_active: bool = True


class ProviderSkill(BaseModel):
    service_category_slug: str
    is_verified: bool = False
    skill_trust_score: float = 0.0


class ProviderProfile(BaseModel):
    id: str
    full_name: str
    phone: str = ""
    is_active: bool = True
    is_available: bool = True
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    years_experience: int = 0
    response_time_min: Optional[float] = None
    trust_score: float = 0.0
    skills: List[ProviderSkill] = Field(default_factory=list)


class EligibleProvider(BaseModel):
    provider_id: str
    full_name: str
    trust_score: float
    years_experience: int


class MatchCandidate(BaseModel):
    provider_id: str
    full_name: str
    trust_score: float
    years_experience: int
    distance_km: float


class BookingLocation(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: Optional[str] = Field(default=None, max_length=500)


class Booking(BaseModel):
    id: str
    customer_id: str
    provider_id: Optional[str] = None
    service_category_id: str
    service_category_slug: str
    care_recipient_name: str
    location: BookingLocation
    scheduled_date: str
    notes: Optional[str] = None
    status: BookingStatus
    payment_status: PaymentStatus = "PENDING"
    incident_reported: bool = False
    cancellation_reason: Optional[str] = None
    version: int = 1
    created_at: str
    updated_at: str


class BookingStatusChange(BaseModel):
    id: str
    booking_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class BookingMatchRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    care_recipient_name: str = Field(min_length=2, max_length=100)
    service_category_slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9-]+$")
    location: BookingLocation
    scheduled_date: str
    notes: Optional[str] = Field(default=None, max_length=1000)


class BookingMatchResult(BaseModel):
    booking: Booking
    matched_providers: List[MatchCandidate]
    total_matches: int


class BookingAcceptRequest(BaseModel):
    provider_id: str


class BookingActionRequest(BaseModel):
    actor_user_id: str
    note: str = ""


class BookingCancelRequest(BaseModel):
    actor_user_id: str
    reason: str = Field(default="", max_length=500)


class ReviewCreateRequest(BaseModel):
    customer_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = Field(default="", max_length=1000)


class Review(BaseModel):
    id: str
    booking_id: str
    provider_id: str
    customer_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    created_at: str


class ProviderLocationUpdate(BaseModel):
    actor_user_id: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ProviderAvailabilityUpdate(BaseModel):
    actor_user_id: str
    is_available: bool


class TrustScoreBreakdown(BaseModel):
    provider_id: str
    completion_component: float
    rating_component: float
    verification_component: float
    responsiveness_component: float
    trust_score: float


class VerificationDocumentCreate(BaseModel):
    actor_user_id: str
    document_type: DocumentType
    storage_key: str = Field(min_length=1, max_length=500)


class VerificationDocument(BaseModel):
    id: str
    provider_id: str
    document_type: DocumentType
    storage_key: str
    status: DocumentStatus = "PENDING"
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: str
    reviewed_at: Optional[str] = None


class DocumentReviewRequest(BaseModel):
    actor_user_id: str
    status: Literal["VERIFIED", "REJECTED"]
    rejection_reason: Optional[str] = None


class SkillVerifyRequest(BaseModel):
    actor_user_id: str


class SkillApplyRequest(BaseModel):
    actor_user_id: str
    service_category_slug: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9-]+$")


class EscrowTransaction(BaseModel):
    booking_id: str
    order_id: str
    payment_id: Optional[str] = None
    currency: str
    gross_amount: Decimal
    platform_fee: Optional[Decimal] = None
    provider_payout: Optional[Decimal] = None
    state: PaymentStatus
    version: int = 1
    created_at: str
    updated_at: str


class PaymentInitiateRequest(BaseModel):
    actor_user_id: str
    amount: Decimal = Field(gt=0, decimal_places=2)
    currency: str = Field(default="LKR", min_length=3, max_length=3)
    return_url: str = ""
    cancel_url: str = ""
    notify_url: str = ""


class CheckoutReference(BaseModel):
    checkout_url: str
    order_id: str
    hash: str
    amount: str
    currency: str


class PaymentNotification(BaseModel):
    merchant_id: str
    order_id: str
    payment_id: str = ""
    payhere_amount: str
    payhere_currency: str
    status_code: str
    status_message: str = ""
    method: str = ""
    md5sig: str
    custom_1: Optional[str] = None
    custom_2: Optional[str] = None


class PaymentSignalOutcome(BaseModel):
    order_id: str
    booking_id: str
    gateway_status: GatewayStatus
    duplicate: bool = False
    escrow: EscrowTransaction


class RefundRequest(BaseModel):
    actor_user_id: str
    reason: str = Field(default="", max_length=500)


class PaymentReleaseRequest(BaseModel):
    actor_user_id: str


class EmergencyEscalationRequest(BaseModel):
    booking_id: str
    triggered_by: TriggeringParty
    triggered_by_user_id: str
    reason: Optional[str] = Field(default=None, max_length=500)


class EscalationResult(BaseModel):
    emergency_number: str
    booking_frozen: bool
    contact_notified: bool
    party_notified: bool
    incident_recorded: bool
    incident_id: Optional[str] = None


class IncidentRecord(BaseModel):
    id: str
    booking_id: str
    triggered_by: TriggeringParty
    triggered_by_user_id: str
    reason: Optional[str] = None
    previous_status: BookingStatus
    emergency_number: str
    contact_notified: bool
    party_notified: bool
    created_at: str


class EmergencyContact(BaseModel):
    has_emergency_contact: bool
    emergency_name: Optional[str] = None
    emergency_phone: Optional[str] = None
    emergency_relation: Optional[str] = None


class EmergencyContactUpdate(BaseModel):
    actor_user_id: str
    emergency_name: str = Field(min_length=1, max_length=100)
    emergency_phone: str = Field(min_length=5, max_length=20)
    emergency_relation: str = Field(default="", max_length=50)


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = Field(min_length=1, max_length=256)


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["booking", "payment", "emergency", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
