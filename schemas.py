"""
Database Schemas for FarmMarket (MongoDB collections)

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user"
- Farmer -> "farmer"
- Category -> "category"
- Product -> "product"
- Order -> "order"
- Payment -> "payment"
- PromoCode -> "promocode"
- Review -> "review"
- Cart -> "cart"
- Wishlist -> "wishlist"
- Notification -> "notification"
- Delivery -> "delivery"
- PickupPoint -> "pickuppoint"

References to other documents are stored as their string `id`.
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, Literal, List, Dict, Any
from datetime import datetime

ROLES = ("customer", "farmer", "admin")

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "in_transit", "delivered", "cancelled")
ORDER_FLOW = ("pending", "confirmed", "preparing", "ready", "in_transit", "delivered")
TERMINAL_ORDER_STATUSES = ("delivered", "cancelled")

PAYMENT_STATUSES = ("pending", "processing", "succeeded", "failed", "cancelled", "refunded", "partially_refunded")

NOTIFICATION_TYPES = (
    "order_created", "order_confirmed", "order_status", "order_shipped", "order_delivered",
    "order_cancelled", "order_reminder", "payment_received", "payment_failed", "review_received",
    "product_low_stock", "farmer_verified", "promotion", "system",
)

UNITS = ("kg", "g", "l", "ml", "piece", "dozen", "bunch")


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postalCode: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    instructions: Optional[str] = None


class User(BaseModel):
    firstName: str = Field(..., max_length=50)
    lastName: str = Field(..., max_length=50)
    email: str
    passwordHash: str
    phone: Optional[str] = None
    role: Literal["customer", "farmer", "admin"] = "customer"
    avatar: Optional[str] = None
    address: Optional[Address] = None
    isVerified: bool = False
    verificationToken: Optional[str] = None
    resetPasswordToken: Optional[str] = None
    resetPasswordExpires: Optional[datetime] = None
    lastLogin: Optional[datetime] = None
    isActive: bool = True


class RatingSummary(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class FarmLocation(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class Farmer(BaseModel):
    userId: str
    farmName: str = Field(..., max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    specialties: List[Literal["vegetables", "fruits", "dairy", "meat", "grains", "herbs",
                              "honey", "eggs", "nuts", "berries"]] = Field(default_factory=list)
    isOrganic: bool = False
    isVerified: bool = False
    verificationDate: Optional[datetime] = None
    farmLocation: Optional[FarmLocation] = None
    deliveryRadius: float = 50
    rating: RatingSummary = Field(default_factory=RatingSummary)
    totalSales: float = 0
    isActive: bool = True


class Category(BaseModel):
    name: str
    slug: str
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    icon: Optional[str] = None
    parent: Optional[str] = None
    level: int = 0
    sortOrder: int = 0
    isActive: bool = True


class Price(BaseModel):
    amount: float = Field(..., ge=0)
    unit: Literal["kg", "g", "l", "ml", "piece", "dozen", "bunch"]


class Availability(BaseModel):
    inStock: bool = True
    quantity: int = Field(0, ge=0)
    minOrderQuantity: int = Field(1, ge=1)
    maxOrderQuantity: Optional[int] = None

    @model_validator(mode="after")
    def _out_of_stock_when_empty(self):
        if self.quantity == 0:
            self.inStock = False
        return self


class Discount(BaseModel):
    type: Literal["percentage", "fixed"]
    value: float = Field(..., ge=0)
    startDate: datetime
    endDate: datetime
    minQuantity: Optional[int] = None
    isActive: bool = True


class Product(BaseModel):
    name: str = Field(..., max_length=100)
    description: str = Field(..., max_length=1000)
    farmerId: str
    categoryId: str
    subcategory: Optional[str] = None
    price: Price
    images: List[str] = Field(default_factory=list)
    availability: Availability = Field(default_factory=Availability)
    isOrganic: bool = False
    tags: List[str] = Field(default_factory=list)
    discounts: List[Discount] = Field(default_factory=list)
    rating: RatingSummary = Field(default_factory=RatingSummary)
    totalSold: int = 0
    isActive: bool = True


class OrderItem(BaseModel):
    productId: str
    farmerId: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of order")
    unit: str
    total: float = Field(..., ge=0)


class Pricing(BaseModel):
    subtotal: float = Field(..., ge=0)
    deliveryFee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)


class TimeSlot(BaseModel):
    start: str
    end: str


class DeliveryInfo(BaseModel):
    type: Literal["delivery", "pickup"]
    address: Optional[Address] = None
    pickupLocation: Optional[str] = None
    scheduledDate: datetime
    timeSlot: Optional[TimeSlot] = None
    actualDeliveryDate: Optional[datetime] = None


class PaymentInfo(BaseModel):
    method: Literal["cash", "card", "online"]
    status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    transactionId: Optional[str] = None
    paidAt: Optional[datetime] = None


class TrackingEntry(BaseModel):
    status: str
    timestamp: datetime
    note: Optional[str] = None
    updatedBy: Optional[str] = None


class Cancellation(BaseModel):
    reason: Optional[str] = None
    cancelledBy: str
    cancelledAt: datetime


class Order(BaseModel):
    orderNumber: str
    customerId: str
    items: List[OrderItem]
    pricing: Pricing
    delivery: DeliveryInfo
    payment: PaymentInfo
    status: Literal["pending", "confirmed", "preparing", "ready", "in_transit", "delivered", "cancelled"] = "pending"
    promoCode: Optional[str] = None
    notes: Dict[str, Optional[str]] = Field(default_factory=dict)
    tracking: List[TrackingEntry] = Field(default_factory=list)
    cancellation: Optional[Cancellation] = None
    archived: bool = False
    archivedAt: Optional[datetime] = None
    reminderSentAt: Optional[datetime] = None


class Refund(BaseModel):
    refundId: str
    providerRefundId: Optional[str] = None
    amount: float = Field(..., gt=0)
    reason: Optional[str] = None
    status: Literal["pending", "succeeded", "failed"] = "pending"
    processedAt: Optional[datetime] = None


class Payment(BaseModel):
    orderId: str
    paymentId: str
    amount: float = Field(..., ge=0)
    currency: str = "RUB"
    method: Literal["card", "cash", "bank_transfer", "digital_wallet"]
    provider: Literal["stripe", "manual"]
    status: Literal["pending", "processing", "succeeded", "failed", "cancelled", "refunded", "partially_refunded"] = "pending"
    transactionId: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    refunds: List[Refund] = Field(default_factory=list)
    refundedAmount: float = 0
    processedAt: Optional[datetime] = None
    failedAt: Optional[datetime] = None


class UsageLimit(BaseModel):
    total: Optional[int] = Field(None, ge=1)
    perUser: int = Field(1, ge=1)


class UserRestrictions(BaseModel):
    newUsersOnly: bool = False
    specificUsers: List[str] = Field(default_factory=list)


class PromoUsage(BaseModel):
    userId: str
    orderId: str
    discountAmount: float
    usedAt: datetime


class PromoCode(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    type: Literal["percentage", "fixed_amount", "free_shipping"]
    value: float = Field(..., ge=0)
    minOrderAmount: float = 0
    maxDiscountAmount: Optional[float] = None
    usageLimit: UsageLimit = Field(default_factory=UsageLimit)
    usageCount: int = 0
    validFrom: datetime
    validUntil: datetime
    applicableCategories: List[str] = Field(default_factory=list)
    applicableProducts: List[str] = Field(default_factory=list)
    applicableFarmers: List[str] = Field(default_factory=list)
    excludedCategories: List[str] = Field(default_factory=list)
    excludedProducts: List[str] = Field(default_factory=list)
    userRestrictions: UserRestrictions = Field(default_factory=UserRestrictions)
    isActive: bool = True
    createdBy: Optional[str] = None
    usedBy: List[PromoUsage] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalise(self):
        self.code = self.code.strip().upper()
        if self.validUntil < self.validFrom:
            raise ValueError("validUntil must not be before validFrom")
        if self.type == "percentage" and self.value > 100:
            raise ValueError("percentage value cannot exceed 100")
        return self


class ReviewResponse(BaseModel):
    text: str
    respondedAt: datetime
    respondedBy: str


class Review(BaseModel):
    customerId: str
    productId: str
    farmerId: str
    orderId: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=500)
    isVerifiedPurchase: bool = True
    helpfulVotes: int = 0
    helpfulVoters: List[str] = Field(default_factory=list)
    response: Optional[ReviewResponse] = None
    isVisible: bool = True


class CartItem(BaseModel):
    productId: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)
    addedAt: Optional[datetime] = None


class Cart(BaseModel):
    userId: str
    items: List[CartItem] = Field(default_factory=list)


class WishlistItem(BaseModel):
    productId: str
    addedAt: datetime
    notes: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"


class Wishlist(BaseModel):
    userId: str
    items: List[WishlistItem] = Field(default_factory=list)
    isPublic: bool = False
    name: str = "My wishlist"
    description: Optional[str] = None


class Notification(BaseModel):
    recipient: str
    type: str
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    data: Dict[str, Any] = Field(default_factory=dict)
    isRead: bool = False
    readAt: Optional[datetime] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    channel: Literal["in_app", "email", "sms", "push"] = "in_app"
    sentAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None


class Driver(BaseModel):
    name: str
    phone: str
    vehicle: Optional[str] = None
    licensePlate: Optional[str] = None


class DeliveryRating(BaseModel):
    score: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    ratedAt: datetime


class Delivery(BaseModel):
    orderId: str
    type: Literal["delivery", "pickup"]
    status: Literal["pending", "assigned", "in_transit", "delivered", "failed", "cancelled"] = "pending"
    driver: Optional[Driver] = None
    address: Optional[Address] = None
    pickupLocation: Optional[str] = None
    scheduledDate: datetime
    timeSlot: Optional[TimeSlot] = None
    actualDeliveryTime: Optional[datetime] = None
    estimatedDeliveryTime: Optional[datetime] = None
    deliveryFee: float = 0
    notes: Optional[str] = None
    rating: Optional[DeliveryRating] = None
    history: List[dict] = Field(default_factory=list)


class WorkingHours(BaseModel):
    start: str
    end: str


class PickupPoint(BaseModel):
    name: str
    address: Address
    workingHours: Dict[Literal["monday", "tuesday", "wednesday", "thursday", "friday",
                               "saturday", "sunday"], WorkingHours] = Field(default_factory=dict)
    phone: Optional[str] = None
    email: Optional[str] = None
    capacity: int = 100
    description: Optional[str] = None
    facilities: List[str] = Field(default_factory=list)
    managerId: Optional[str] = None
    isActive: bool = True
