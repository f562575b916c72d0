"""
Database Schemas for the Salon POS & Bookkeeping API

Each Pydantic model represents a MongoDB collection in the connected database
(users, packages, inventory, bills) or a sub-document embedded in one of them.
Ownership (`userId`) and the createdAt/updatedAt stamps are added by the code
that writes the document, not by the client.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

PackageType = Literal["Basic", "Premium"]
PaymentStatus = Literal["Paid", "Unpaid"]


class User(BaseModel):
    """Salon account owner"""
    email: str = Field(..., description="Login email, unique")
    name: Optional[str] = Field(None, description="Display name")
    password: str = Field(..., description="bcrypt hash (server-side only)")
    isVerified: bool = Field(False, description="Whether the email has been confirmed")


class Package(BaseModel):
    """Service offering billed to clients"""
    name: str = Field(..., min_length=1, description="Package name")
    description: str = Field("", description="What the service includes")
    price: float = Field(..., ge=0, description="Price of the package")
    type: PackageType = Field("Basic", description="Basic or Premium")


class InventoryItem(BaseModel):
    """Stock purchased by the salon"""
    name: str = Field(..., min_length=1, description="Product name")
    brandName: Optional[str] = Field(None, description="Brand")
    category: Optional[str] = Field(None, description="Category such as Hair, Skin, Nails")
    quantity: float = Field(..., gt=0, description="Units in stock")
    pricePerUnit: float = Field(..., gt=0, description="Purchase price per unit")
    paymentStatus: PaymentStatus = Field("Unpaid", description="Whether the supplier has been paid")
    expiryDate: Optional[datetime] = Field(None, description="Expiry date, if perishable")


class BillItem(BaseModel):
    packageId: str = Field(..., description="Referenced package _id as string")
    packageName: str = Field(..., description="Snapshot of package name at time of billing")
    packagePrice: float = Field(..., ge=0, description="Snapshot of package price")
    packageType: PackageType = Field(..., description="Snapshot of package type")
    quantity: int = Field(1, ge=1)


class ProductSale(BaseModel):
    """Retail product sold alongside the services"""
    inventoryId: Optional[str] = Field(None, description="Inventory _id when drawn from stock")
    productName: str = Field(..., min_length=1)
    quantity: float = Field(1, gt=0)
    unitPrice: float = Field(..., ge=0)
    totalPrice: Optional[float] = Field(None, description="quantity * unitPrice, recomputed server-side")


class Expenditure(BaseModel):
    """Ad-hoc cost attached to a bill (complimentary add-ons, supplies)"""
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, validation_alias=AliasChoices("price", "amount"))
    description: Optional[str] = None


class Bill(BaseModel):
    items: List[BillItem] = Field(default_factory=list)
    productSales: List[ProductSale] = Field(default_factory=list)
    expenditures: List[Expenditure] = Field(default_factory=list)
    upiAmount: float = Field(0.0, ge=0)
    cardAmount: float = Field(0.0, ge=0)
    cashAmount: float = Field(0.0, ge=0)
    clientName: str = Field(..., description="Client the services were rendered to")
    customerMobile: Optional[str] = None
    attendantBy: str = Field(..., description="Staff member who attended the client")
    totalAmount: float = Field(..., ge=0)
