from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Literal, Union


# ============================================================================
# Supplier Directory Schemas
# ============================================================================

class SupplierCreate(BaseModel):
    name: str = Field(..., min_length=1)
    supplier_code: Optional[str] = None
    contact_person: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class Supplier(BaseModel):
    id: int
    supplier_code: Optional[str] = None
    name: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_registered: bool
    is_active: bool

    class Config:
        from_attributes = True


# ============================================================================
# Catalog (Item Master) Schemas
# ============================================================================

class ItemCategoryCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1)
    parent_id: Optional[int] = None


class ItemCategory(BaseModel):
    id: int
    parent_id: Optional[int] = None
    code: str
    name: str

    class Config:
        from_attributes = True


class ItemMasterCreate(BaseModel):
    item_code: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    model_name: Optional[str] = None
    make: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[int] = None
    sub_category_id: Optional[int] = None
    uom: str = "Piece"
    reference_price: Optional[float] = Field(None, ge=0)


class CatalogItem(BaseModel):
    id: int
    item_code: Optional[str] = None
    display_name: Optional[str] = None
    model_name: Optional[str] = None
    make: Optional[str] = None
    category_id: int = 0
    category_name: Optional[str] = None
    sub_category_id: int = 0
    sub_category_name: Optional[str] = None
    uom_name: Optional[str] = None
    description: Optional[str] = None
    reference_price: Optional[float] = None


# ============================================================================
# Purchase Request Schemas
# ============================================================================

class PurchaseRequestLineCreate(BaseModel):
    item_id: int = 0
    category_id: int = 0
    category_name: Optional[str] = None
    sub_category_id: int = 0
    sub_category_name: Optional[str] = None
    model_name: str = Field(..., min_length=1)
    make: Optional[str] = None
    uom_name: Optional[str] = None
    description: Optional[str] = None
    quantity: float = Field(..., gt=0)
    unit_price: float = Field(0, ge=0)


class PurchaseRequestLine(BaseModel):
    id: int
    line_number: int
    item_id: int
    category_id: Optional[int] = 0
    category_name: Optional[str] = None
    sub_category_id: Optional[int] = 0
    sub_category_name: Optional[str] = None
    model_name: str
    make: Optional[str] = None
    uom_name: Optional[str] = None
    description: Optional[str] = None
    quantity: float
    unit_price: float
    total_price: float

    class Config:
        from_attributes = True


class PurchaseRequestCreate(BaseModel):
    request_date: Optional[date] = None
    requested_by: str = Field(..., min_length=1)
    department: Optional[str] = None
    project_name: Optional[str] = None
    purchase_type: Optional[str] = None
    remarks: Optional[str] = None
    lines: List[PurchaseRequestLineCreate] = Field(..., min_length=1)


class PurchaseRequest(BaseModel):
    id: int
    request_number: str
    request_date: date
    requested_by: str
    department: Optional[str] = None
    project_name: Optional[str] = None
    purchase_type: Optional[str] = None
    remarks: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rfp_id: Optional[int] = None
    lines: List[PurchaseRequestLine] = []

    class Config:
        from_attributes = True


class PurchaseRequestRejection(BaseModel):
    reason: str = Field(..., min_length=1)


class ImportRowInput(BaseModel):
    """A spreadsheet row as typed in; numeric cells are validated later"""
    model: Optional[str] = None
    make: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    uom: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[Union[float, str]] = None
    unit_price: Optional[Union[float, str]] = None
    row_number: Optional[int] = None


class ResolveLinesRequest(BaseModel):
    rows: List[ImportRowInput]


# ============================================================================
# RFP Schemas
# ============================================================================

class RFPItemCreate(BaseModel):
    item_name: str = Field(..., min_length=1)
    item_code: Optional[str] = None
    quantity: float = Field(..., gt=0)
    unit_of_measurement: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    indicative_price: Optional[float] = Field(None, ge=0)
    target_unit_price: Optional[float] = Field(None, ge=0)
    specifications: Optional[str] = None
    remarks: Optional[str] = None


class RFPItemCorrection(BaseModel):
    """Administrative correction of an item after the RFP left DRAFT"""
    item_name: Optional[str] = None
    item_code: Optional[str] = None
    quantity: Optional[float] = Field(None, gt=0)
    unit_of_measurement: Optional[str] = None
    indicative_price: Optional[float] = Field(None, ge=0)
    target_unit_price: Optional[float] = Field(None, ge=0)
    specifications: Optional[str] = None
    reason: str = Field(..., min_length=1)


class RFPCreate(BaseModel):
    rfp_number: Optional[str] = None
    request_date: Optional[date] = None
    closing_date: date
    requested_by: Optional[str] = None
    department: Optional[str] = None
    payment_terms: Optional[str] = None
    remarks: Optional[str] = None
    items: List[RFPItemCreate] = []


class RFPUpdate(BaseModel):
    closing_date: Optional[date] = None
    requested_by: Optional[str] = None
    department: Optional[str] = None
    payment_terms: Optional[str] = None
    remarks: Optional[str] = None
    items: Optional[List[RFPItemCreate]] = None


class RFPFromPurchaseRequests(BaseModel):
    purchase_request_ids: List[int] = Field(..., min_length=1)
    line_ids: Optional[List[int]] = None  # restrict to these PR lines
    rfp_number: Optional[str] = None
    request_date: Optional[date] = None
    closing_date: date
    department: Optional[str] = None
    payment_terms: Optional[str] = None
    remarks: Optional[str] = None


class UnregisteredVendor(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    contact_person: Optional[str] = None


class RFPFloat(BaseModel):
    supplier_ids: List[int] = []
    unregistered_vendors: List[UnregisteredVendor] = []


class RFPExtend(BaseModel):
    new_closing_date: date
    reason: Optional[str] = None


class RFPCancel(BaseModel):
    reason: str = Field(..., min_length=1)


class RFPClose(BaseModel):
    remarks: Optional[str] = None


# ============================================================================
# Quotation Schemas
# ============================================================================

class QuotationItemInput(BaseModel):
    rfp_item_id: Optional[int] = None
    item_name: Optional[str] = None
    quantity: Optional[Decimal] = None  # defaults to the RFP item quantity
    unit_price: Decimal
    tax_rate: Decimal = Decimal("0")
    delivery_time: Optional[str] = None
    remarks: Optional[str] = None


class QuotationSubmit(BaseModel):
    supplier_id: int
    quotation_number: Optional[str] = None
    quotation_date: Optional[date] = None
    validity_date: Optional[date] = None
    payment_terms: Optional[str] = None
    delivery_terms: Optional[str] = None
    currency: str = "INR"
    remarks: Optional[str] = None
    items: List[QuotationItemInput] = Field(..., min_length=1)


class QuotationResubmit(BaseModel):
    items: List[QuotationItemInput] = Field(..., min_length=1)
    payment_terms: Optional[str] = None
    remarks: Optional[str] = None
    expected_version: Optional[int] = None


class QuotationNegotiate(BaseModel):
    notes: Optional[str] = None
    expected_version: Optional[int] = None


class QuotationWithdraw(BaseModel):
    reason: Optional[str] = None


# ============================================================================
# Vendor Selection & Approval Schemas
# ============================================================================

class VendorSelectionInput(BaseModel):
    rfp_item_id: int
    selected_supplier_id: int
    remarks: Optional[str] = None


class SendForApproval(BaseModel):
    rfp_id: int
    approval_group: Optional[str] = None
    competitive_bidding: bool = True
    lowest_bid_selected: bool = True
    justification: Optional[str] = None
    selections: List[VendorSelectionInput] = []


class ApprovalDecision(BaseModel):
    rfp_id: int
    action: Literal["APPROVE", "REJECT"]
    remarks: Optional[str] = None

    @field_validator('action', mode='before')
    @classmethod
    def normalize_action(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v
