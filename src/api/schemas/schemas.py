from typing import Literal
from pydantic import BaseModel, Field


class SeatLockRequest(BaseModel):
    event_id: str = Field(min_length=1)
    seating_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    lock_id: str | None = None


class SeatLedgerResponse(BaseModel):
    seat_type: str
    quantity: int
    locked_seats: int
    remaining_seats: int
    status: str
    lock_id: str | None = None
    expires_at: str | None = None


class SeatingCategoryCreate(BaseModel):
    seat_type: str = Field(min_length=1, max_length=32)
    price: int = Field(ge=0)
    total_seats: int = Field(ge=0)
    is_active: bool = True


class EventCreate(BaseModel):
    name: str = Field(min_length=1)
    date_time: str
    location: str = ""
    status: Literal["upcoming", "active"] = "upcoming"
    seatings: list[SeatingCategoryCreate] = Field(min_length=1)


class SeatingCategoryResponse(BaseModel):
    id: str
    seat_type: str
    price: int
    total_seats: int
    locked_seats: int
    seats_sold: int
    remaining_seats: int
    status: str
    is_active: bool


class EventResponse(BaseModel):
    id: str
    name: str
    date_time: str
    location: str
    status: str
    seatings: list[SeatingCategoryResponse]


class CategoryRemovalResponse(BaseModel):
    seating_id: str
    action: Literal["deleted", "archived"]


class CategoryActivationRequest(BaseModel):
    is_active: bool


class PaymentOrderCreate(BaseModel):
    event_id: str = Field(min_length=1)
    seating_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    lock_id: str | None = None


class PaymentOrderResponse(BaseModel):
    order_id: str
    lock_id: str
    status: str
    remote_order_id: str
    amount: int
    currency: str
    key_id: str | None = None
    payment_id: str | None = None
    failure_reason: str | None = None
    refund_id: str | None = None
    expires_at: str | None = None


class RazorpayVerifyRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentFailureRequest(BaseModel):
    reason: str = Field(default="CLIENT_REPORTED", max_length=64)


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)


class WebhookResponse(BaseModel):
    status: str
    event: str | None = None
    order_id: str | None = None
    detail: str | None = None


class SweepResponse(BaseModel):
    expired_orders: list[str]
    released_locks: list[str]
    refunded_orders: list[str]
    errors: int


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
