"""
Database Schemas

MongoDB collection schemas and request bodies, as Pydantic models.
Collection name is the lowercase class name:
- Product -> "product" collection (owned by the catalog service, read here)
- Cart -> "cart" collection
- Order -> "order" collection
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    DECLINED = "Declined"


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product". Only stock and sales_count are written by this service.
    """
    seller_id: str = Field(..., description="Owning farmer id")
    name: str = Field(..., max_length=100, description="Product name")
    category: Optional[str] = Field(None, description="Product category")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units available to sell")
    unit: str = Field("kg", description="Selling unit")
    is_active: bool = Field(True, description="Listed by the farmer")
    approval_status: str = Field("Pending", description="Pending|Approved|Rejected")
    image_url: Optional[str] = Field(None, description="Image URL for the product")
    sales_count: int = Field(0, ge=0, description="Units sold through delivered orders")


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart". At most one per (buyer_id, seller_id).
    """
    buyer_id: str
    seller_id: str
    items: List[CartLine] = Field(default_factory=list)


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zip_code: Optional[str] = None
    phone: str = Field(..., min_length=1)
    country: str = "Nigeria"


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Referenced product _id as string")
    name: str = Field(..., description="Snapshot of product name at checkout")
    price: float = Field(..., ge=0, description="Unit price at checkout")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    line_total: float = Field(..., ge=0, description="price * quantity")


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order". Items are a frozen snapshot taken at checkout.
    """
    order_number: str
    buyer_id: str
    seller_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: ShippingAddress
    payment_method: str = "COD"
    seller_notes: Optional[str] = None
    delivery_instructions: Optional[str] = None
    status_history: List[dict] = Field(default_factory=list)


# Request bodies

class AddCartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class CheckoutRequest(BaseModel):
    cart_id: str
    shipping_address: ShippingAddress
    payment_method: str = "COD"
    delivery_instructions: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    # "Processing" or a dashboard alias such as "accepted"; mapped by orders.parse_status
    status: str
    notes: Optional[str] = None


class NotesUpdateRequest(BaseModel):
    notes: str
