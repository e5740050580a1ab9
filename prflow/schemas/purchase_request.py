from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from prflow.services.records import Decision, PrStatus, Priority


class PrItemCreate(BaseModel):
    material_id: str = Field(..., min_length=1, max_length=64)
    quantity: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    unit: str = Field(..., min_length=1, max_length=30)
    estimated_unit_price: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)
    vendor: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = Field(None, max_length=1000)


class PurchaseRequestCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    required_by: Optional[date] = None
    priority: Priority = Priority.NORMAL
    pr_type: Optional[str] = Field(None, max_length=50)
    items: List[PrItemCreate] = Field(..., min_length=1, max_length=200)


class PurchaseRequestUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    required_by: Optional[date] = None
    priority: Optional[Priority] = None


class ApproveRequest(BaseModel):
    stage: str = Field(..., min_length=1, max_length=50)
    comment: Optional[str] = Field(None, max_length=1000)


class RejectRequest(BaseModel):
    stage: str = Field(..., min_length=1, max_length=50)
    reason: str = Field(..., min_length=1, max_length=1000)


class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1, max_length=2000)


class PrItemResponse(BaseModel):
    line_number: int
    material_id: str
    quantity: Decimal
    unit: str
    estimated_unit_price: Decimal
    vendor: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.estimated_unit_price


class ApprovalHistoryResponse(BaseModel):
    stage: str
    actor_ref: str
    decision: Decision
    comment: Optional[str] = None
    decided_at: datetime

    model_config = {"from_attributes": True}


class CommentResponse(BaseModel):
    id: str
    author_ref: str
    text: str
    created_at: datetime

    model_config = {"from_attributes": True}


class PurchaseRequestResponse(BaseModel):
    id: str
    number: str
    project_id: str
    pr_type: str
    title: str
    description: Optional[str] = None
    required_by: Optional[date] = None
    priority: Priority
    status: PrStatus
    current_stage: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int
    can_act: bool = False
    items: List[PrItemResponse] = []
    approval_history: List[ApprovalHistoryResponse] = []
    comments: List[CommentResponse] = []

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0"))


class StageListResponse(BaseModel):
    stages: List[str]
    current_stage: Optional[str] = None
    current_index: Optional[int] = None
    can_act: bool
