"""
Database Schemas for the VenderSphere marketplace

Each document model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- SellerRequest -> "seller"
- Product -> "product"
- Cart lines (CartItem) -> "cart"
- Order -> "order"
- Payment -> "payment"
- Payout -> "payout"
- Review -> "review"

Request bodies accepted by the API live at the bottom of the module.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    REMOVED = "removed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class SellerRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    CUSTOMER = "customer"
    SELLER = "seller"
    ADMIN = "admin"


# Payment method that leaves the order pending until it is delivered
PAY_ON_DELIVERY = "cod"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class User(Document):
    """Users collection schema"""
    name: Optional[str] = Field(None, description="Display name")
    email: EmailStr = Field(..., description="Email address")
    photo: Optional[str] = Field(None, description="Avatar URL")
    role: Role = Field(Role.CUSTOMER, description="Role: customer, seller or admin")


class SellerRequest(Document):
    """Seller applications schema"""
    email: EmailStr
    shop_name: str = Field(..., description="Public shop name")
    phone: Optional[str] = None
    address: Optional[str] = None
    status: SellerRequestStatus = Field(SellerRequestStatus.PENDING)


class Product(Document):
    """Products collection schema"""
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    brand: Optional[str] = None
    category: str = Field(..., description="Category, stored lower-case")
    price: float = Field(..., ge=0, description="Unit price")
    discount: float = Field(0, ge=0, le=100, description="Discount percent")
    stock: int = Field(0, ge=0, description="Sellable quantity")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    seller_email: EmailStr = Field(..., description="Owner seller email")
    seller_id: Optional[str] = None
    rating: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    sold: int = Field(0, ge=0)
    status: ProductStatus = Field(ProductStatus.ACTIVE)


class CartItem(BaseModel):
    product_id: str = Field(..., description="ID of the product")
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    quantity: int = Field(1, ge=1, description="Quantity of the product")


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: Optional[str] = None
    seller_email: Optional[str] = None
    discount: float = 0


class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    address_line: str = Field(..., min_length=1)
    postal_code: Optional[str] = None


class Order(Document):
    user_email: EmailStr
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    subtotal: float
    shipping_cost: float
    discount: float = 0
    total: float
    status: OrderStatus = Field(OrderStatus.PENDING)
    estimated_delivery_days: int
    estimated_delivery: datetime
    created_at: datetime


class Payment(BaseModel):
    order_id: str
    payer_email: EmailStr
    amount: float
    method: str
    transaction_id: str


class Payout(Document):
    seller_email: EmailStr
    amount: float = Field(..., gt=0)
    method: str
    account: Optional[str] = Field(None, description="Destination account reference")
    status: PayoutStatus = Field(PayoutStatus.PENDING)


class Review(BaseModel):
    product_id: str
    user_email: EmailStr
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# Requests

class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem]
    shipping_address: ShippingAddress
    payment_method: str = Field(PAY_ON_DELIVERY, min_length=1)


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartQuantityRequest(BaseModel):
    product_id: str
    quantity: int


class RemoveCartItemRequest(BaseModel):
    product_id: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class PaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    method: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)


class PaymentIntentRequest(BaseModel):
    order_id: str


class PayoutRequest(BaseModel):
    amount: float = Field(..., gt=0)
    method: str = Field(..., min_length=1)
    account: Optional[str] = None


class PayoutStatusUpdate(BaseModel):
    status: PayoutStatus


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    brand: Optional[str] = None
    category: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    stock: int = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None


class ProductStatusUpdate(BaseModel):
    status: ProductStatus


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    user_name: Optional[str] = None


class UserCreate(BaseModel):
    name: Optional[str] = None
    photo: Optional[str] = None


class SellerApplication(BaseModel):
    shop_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None


class SellerDecision(BaseModel):
    status: SellerRequestStatus


class NewsletterRequest(BaseModel):
    email: EmailStr
