"""
Travonex Database Schemas (MongoDB via Pydantic)

Each Pydantic model maps to one MongoDB collection using the lowercase class name.
Example: class Booking -> collection "booking"

Embedded structures (batches, travelers, ledger entries) are plain models
without a collection of their own.
"""
from __future__ import annotations
from pydantic import BaseModel, Field, EmailStr
from typing import Any, Dict, List, Optional, Literal
from datetime import datetime

Role = Literal["user", "organizer", "admin"]
AccountStatus = Literal["Active", "Inactive", "Suspended"]

TripStatus = Literal["Published", "Draft", "Unlisted", "Pending Approval", "Rejected"]
BatchStatus = Literal["Active", "Inactive", "Pending Approval", "Rejected"]
BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
RefundStatus = Literal["none", "pending", "processed"]
PayoutStatus = Literal["Pending", "Paid", "Failed"]
PaymentMode = Literal["IMPS", "NEFT", "UPI", "Manual"]
KycStatus = Literal["Incomplete", "Pending", "Verified", "Rejected", "Suspended"]
AgreementStatus = Literal["Not Submitted", "Submitted", "Verified", "Rejected"]
TxnType = Literal["Credit", "Debit"]
TxnSource = Literal["Referral", "Booking", "Refund", "Admin Adjustment", "Promo"]
DisputeStatus = Literal["Open", "Resolved", "Closed"]

# Trip states an organizer may still edit.
EDITABLE_TRIP_STATES = ("Draft", "Pending Approval", "Rejected", "Unlisted")


class WalletTransaction(BaseModel):
    id: str
    date: datetime
    description: str
    amount: float  # signed: positive credit, negative debit
    type: TxnType
    source: TxnSource


class User(BaseModel):
    id: Optional[str] = Field(default=None, description="Document _id as string")
    name: str = Field(...)
    email: EmailStr
    phone: Optional[str] = None
    passwordHash: Optional[str] = None
    role: Role = Field("user")
    status: AccountStatus = "Active"
    avatar: Optional[str] = None
    walletBalance: float = 0.0
    walletTransactions: List[WalletTransaction] = []
    referralCode: Optional[str] = None
    referredBy: Optional[str] = None
    wishlist: List[str] = []
    gender: Optional[str] = None
    dateOfBirth: Optional[str] = None
    emergencyContact: Optional[str] = None
    interests: List[str] = []
    marketingOptIn: bool = False
    createdAt: Optional[datetime] = None


class Organizer(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    phone: Optional[str] = None
    passwordHash: Optional[str] = None
    organizerType: Optional[str] = None
    logo: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    experience: Optional[int] = None
    specializations: List[str] = []
    pan: Optional[str] = None
    gstin: Optional[str] = None
    bankAccountNumber: Optional[str] = None
    ifscCode: Optional[str] = None
    kycStatus: KycStatus = "Incomplete"
    vendorAgreementStatus: AgreementStatus = "Not Submitted"
    createdAt: Optional[datetime] = None


class CancellationRule(BaseModel):
    days: int = Field(..., ge=0, description="Days before departure")
    refundPercentage: float = Field(..., ge=0, le=100)


class TripBatch(BaseModel):
    id: str
    startDate: str  # YYYY-MM-DD
    endDate: str  # YYYY-MM-DD
    maxParticipants: int = Field(..., ge=1)
    priceOverride: Optional[float] = Field(default=None, ge=0)
    status: BatchStatus = "Active"
    notes: Optional[str] = None
    seatsBooked: int = 0


class Trip(BaseModel):
    id: Optional[str] = None
    title: str
    slug: str
    description: Optional[str] = None
    city: Optional[str] = None
    tripType: Optional[str] = None
    price: float = Field(..., ge=0)
    taxIncluded: bool = True
    taxPercentage: float = Field(0, ge=0, le=100)
    batches: List[TripBatch] = []
    cancellationRules: List[CancellationRule] = []
    organizerId: str
    status: TripStatus = "Pending Approval"
    adminNotes: Optional[str] = None
    createdAt: Optional[datetime] = None


class Traveler(BaseModel):
    name: str
    email: EmailStr
    phone: str
    emergencyName: Optional[str] = None
    emergencyPhone: Optional[str] = None


class Booking(BaseModel):
    id: Optional[str] = None
    userId: str
    tripId: str
    batchId: str
    travelers: List[Traveler]
    subtotal: float
    couponCode: Optional[str] = None
    couponDiscount: float = 0.0
    walletUsed: float = 0.0
    tax: float = 0.0
    amount: float
    status: BookingStatus = "pending"
    refundStatus: RefundStatus = "none"
    refundAmount: float = 0.0
    orderId: Optional[str] = None
    paymentId: Optional[str] = None
    cancellationReason: Optional[str] = None
    pendingExpiresAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class Coupon(BaseModel):
    id: Optional[str] = None
    code: str
    discount: float = Field(..., ge=0)
    expiresAt: datetime
    usageLimit: Optional[int] = Field(default=None, ge=1)
    usageCount: int = 0


class Payout(BaseModel):
    id: Optional[str] = None
    tripId: str
    batchId: str
    organizerId: str
    totalRevenue: float
    platformCommission: float
    netPayout: float
    status: PayoutStatus = "Pending"
    requestDate: Optional[datetime] = None
    paidDate: Optional[datetime] = None
    paymentMode: Optional[PaymentMode] = None
    utrNumber: Optional[str] = None
    invoiceUrl: Optional[str] = None
    notes: Optional[str] = None
    batchKey: str


class AdminUser(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    passwordHash: Optional[str] = None
    role: str = "Super Admin"
    status: AccountStatus = "Active"
    lastLogin: Optional[datetime] = None


class RoleDef(BaseModel):
    """
    Admin role with a free-form permission map.
    Collection: "role"
    """
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    permissions: Dict[str, Any] = {}


class AuditLog(BaseModel):
    id: Optional[str] = None
    action: str
    adminId: Optional[str] = None
    targetCollection: str
    targetId: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    createdAt: Optional[datetime] = None


class Review(BaseModel):
    id: Optional[str] = None
    userId: str
    tripId: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    createdAt: Optional[datetime] = None


class Dispute(BaseModel):
    id: Optional[str] = None
    userId: str
    bookingId: str
    organizerId: Optional[str] = None
    reason: str
    status: DisputeStatus = "Open"
    resolution: Optional[str] = None
    createdAt: Optional[datetime] = None
