from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from school_fees.models import PaymentStatus, UserRole


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["Jane Parent"])
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", examples=["jane@example.com"])
    role: UserRole = UserRole.PARENT


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: UserRole
    created_at: datetime


class ParentRead(UserRead):
    student_count: int = 0


class FeeStructureCreate(BaseModel):
    name: str = Field(..., min_length=1, examples=["Grade 1 Term Fee"])
    grade: int = Field(..., ge=0)
    amount: float = Field(..., gt=0.0)
    late_fee: float = Field(0.0, ge=0.0)
    description: Optional[str] = None


class FeeStructureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    grade: int
    amount: float
    late_fee: float
    description: Optional[str] = None
    created_at: datetime


class StudentCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    grade: int = Field(..., ge=0)
    parent_id: Optional[int] = None
    fee_structure_id: Optional[int] = None


class StudentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    grade: int
    parent_id: Optional[int] = None
    fee_structure_id: Optional[int] = None
    created_at: datetime


class PaymentCreate(BaseModel):
    student_id: int
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2, examples=["500.00"])
    description: Optional[str] = Field(None, max_length=500)
    due_date: Optional[datetime] = None
    # Generated server-side when omitted
    transaction_id: Optional[str] = Field(None, min_length=1, max_length=64)


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: str
    amount: Decimal
    status: PaymentStatus
    student_id: Optional[int] = None
    user_id: Optional[int] = None
    description: Optional[str] = None
    payment_date: datetime
    due_date: Optional[datetime] = None
    processed_at: Optional[datetime] = None
