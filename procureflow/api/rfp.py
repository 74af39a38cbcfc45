"""
RFP (Request for Proposal) API Endpoints

Provides endpoints for:
- RFP CRUD operations and creation from approved purchase requests
- Floating to suppliers, closing date extension, item correction
- Evaluation, approval request and approval decision
- Cancel / close
- Summary and audit trail / timeline
"""
import json
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from procureflow.database import get_db
from procureflow.api.auth import get_current_actor
from procureflow.models import RFP, RFPItem, RFPSupplier, RFPQuotation, RFPQuotationItem, RFPQuotationRevision
from procureflow.schemas import (
    RFPCreate, RFPUpdate, RFPFromPurchaseRequests, RFPFloat, RFPExtend,
    RFPItemCorrection, RFPCancel, RFPClose, SendForApproval, ApprovalDecision
)
from procureflow.services import rfp_service
from procureflow.services.rfp_service import effective_status, get_approval_request, get_rfp

router = APIRouter()


# =============================================================================
# Serializers
# =============================================================================

def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_rfp(rfp: RFP) -> dict:
    """Serialize RFP to response format"""
    return {
        "id": rfp.id,
        "rfp_number": rfp.rfp_number,
        "request_date": rfp.request_date,
        "closing_date": rfp.closing_date,
        "requested_by": rfp.requested_by,
        "department": rfp.department,
        "payment_terms": rfp.payment_terms,
        "remarks": rfp.remarks,
        "status": rfp.status,
        "effective_status": effective_status(rfp),
        "approval_status": rfp.approval_status,
        "approval_group": rfp.approval_group,
        "competitive_bidding": rfp.competitive_bidding,
        "lowest_bid_selected": rfp.lowest_bid_selected,
        "selection_justification": rfp.selection_justification,
        "approval_request": get_approval_request(rfp),
        "approval_requested_at": rfp.approval_requested_at,
        "approval_requested_by": rfp.approval_requested_by,
        "decision_remarks": rfp.decision_remarks,
        "decided_at": rfp.decided_at,
        "decided_by": rfp.decided_by,
        "evaluated_at": rfp.evaluated_at,
        "floated_at": rfp.floated_at,
        "cancelled_at": rfp.cancelled_at,
        "cancellation_reason": rfp.cancellation_reason,
        "closed_at": rfp.closed_at,
        "created_by": rfp.created_by,
        "created_at": rfp.created_at,
        "updated_at": rfp.updated_at,
        "items": [serialize_rfp_item(item) for item in rfp.items],
        "suppliers": [serialize_rfp_supplier(supplier) for supplier in rfp.suppliers],
        "quotations": [serialize_quotation(quotation) for quotation in rfp.quotations],
        "item_count": len(rfp.items),
        "supplier_count": len(rfp.suppliers),
        "quotation_count": len(rfp.quotations)
    }


def serialize_rfp_item(item: RFPItem) -> dict:
    return {
        "id": item.id,
        "rfp_id": item.rfp_id,
        "line_number": item.line_number,
        "item_name": item.item_name,
        "item_code": item.item_code,
        "quantity": _float(item.quantity),
        "unit_of_measurement": item.unit_of_measurement,
        "category": item.category,
        "sub_category": item.sub_category,
        "indicative_price": _float(item.indicative_price),
        "target_unit_price": _float(item.target_unit_price),
        "grand_total": _float(item.grand_total),
        "specifications": item.specifications,
        "remarks": item.remarks,
        "pr_line_id": item.pr_line_id,
        "pr_number": item.pr_number
    }


def serialize_rfp_supplier(supplier: RFPSupplier) -> dict:
    return {
        "id": supplier.id,
        "rfp_id": supplier.rfp_id,
        "supplier_id": supplier.supplier_id,
        "supplier_name": supplier.supplier_name,
        "contact_person": supplier.contact_person,
        "contact_email": supplier.contact_email,
        "is_registered": supplier.supplier.is_registered if supplier.supplier else None,
        "invitation_sent": supplier.invitation_sent,
        "invitation_sent_at": supplier.invitation_sent_at,
        "response_received": supplier.response_received,
        "response_at": supplier.response_at,
        "status": supplier.status,
        "remarks": supplier.remarks
    }


def serialize_quotation(quotation: RFPQuotation) -> dict:
    return {
        "id": quotation.id,
        "rfp_id": quotation.rfp_id,
        "supplier_id": quotation.supplier_id,
        "supplier_name": quotation.supplier.name if quotation.supplier else None,
        "quotation_number": quotation.quotation_number,
        "quotation_date": quotation.quotation_date,
        "validity_date": quotation.validity_date,
        "payment_terms": quotation.payment_terms,
        "delivery_terms": quotation.delivery_terms,
        "currency": quotation.currency,
        "subtotal": _float(quotation.subtotal),
        "tax_amount": _float(quotation.tax_amount),
        "net_amount": _float(quotation.net_amount),
        "status": quotation.status,
        "ranking": quotation.ranking,
        "negotiation_notes": quotation.negotiation_notes,
        "negotiation_round": quotation.negotiation_round,
        "remarks": quotation.remarks,
        "version": quotation.version,
        "submitted_at": quotation.submitted_at,
        "last_submitted_at": quotation.last_submitted_at,
        "items": [serialize_quotation_item(item) for item in quotation.items],
        "revisions": [serialize_revision(revision) for revision in quotation.revisions]
    }


def serialize_quotation_item(item: RFPQuotationItem) -> dict:
    return {
        "id": item.id,
        "rfp_item_id": item.rfp_item_id,
        "item_name": item.item_name,
        "quantity": _float(item.quantity),
        "unit_of_measurement": item.unit_of_measurement,
        "unit_price": _float(item.unit_price),
        "tax_rate": _float(item.tax_rate),
        "tax_amount": _float(item.tax_amount),
        "total_price": _float(item.total_price),
        "rank": item.rank,
        "rank_label": f"L{item.rank}" if item.rank else None,
        "delivery_time": item.delivery_time,
        "remarks": item.remarks
    }


def serialize_revision(revision: RFPQuotationRevision) -> dict:
    prices = json.loads(revision.prices) if revision.prices else {}
    return {
        "round_number": revision.round_number,
        "prices": {int(item_id): float(price) for item_id, price in prices.items()},
        "net_amount": _float(revision.net_amount),
        "submitted_at": revision.submitted_at,
        "submitted_by": revision.submitted_by
    }


# =============================================================================
# RFP CRUD
# =============================================================================

@router.get("")
async def list_rfps(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """List RFPs with filters"""
    rfps, total = rfp_service.list_rfps(db, status=status_filter, search=search, page=page, size=size)

    return {
        "rfps": [
            {
                "id": rfp.id,
                "rfp_number": rfp.rfp_number,
                "request_date": rfp.request_date,
                "closing_date": rfp.closing_date,
                "requested_by": rfp.requested_by,
                "department": rfp.department,
                "status": rfp.status,
                "effective_status": effective_status(rfp),
                "approval_status": rfp.approval_status,
                "created_at": rfp.created_at,
                "item_count": len(rfp.items),
                "supplier_count": len(rfp.suppliers),
                "quotation_count": len(rfp.quotations)
            }
            for rfp in rfps
        ],
        "total": total,
        "page": page,
        "size": size
    }


@router.get("/waiting-for-approval")
async def waiting_for_approval(db: Session = Depends(get_db)):
    """RFPs with a pending approval request"""
    rfps = rfp_service.list_waiting_for_approval(db)
    return [
        {
            "id": rfp.id,
            "rfp_number": rfp.rfp_number,
            "status": rfp.status,
            "approval_group": rfp.approval_group,
            "approval_requested_at": rfp.approval_requested_at,
            "approval_requested_by": rfp.approval_requested_by,
            "approval_request": get_approval_request(rfp)
        }
        for rfp in rfps
    ]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_rfp(
    rfp_data: RFPCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Create a new RFP in DRAFT"""
    rfp = rfp_service.create_rfp(db, rfp_data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp.id))


@router.post("/from-purchase-requests", status_code=status.HTTP_201_CREATED)
async def create_rfp_from_purchase_requests(
    data: RFPFromPurchaseRequests,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Create a DRAFT RFP from approved purchase requests"""
    rfp = rfp_service.create_rfp_from_purchase_requests(db, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp.id))


@router.post("/send-for-approval")
async def send_for_approval(
    data: SendForApproval,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Finalize vendor selection and request management approval"""
    rfp = get_rfp(db, data.rfp_id)
    rfp_service.send_for_approval(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp.id))


@router.post("/approve-reject")
async def approve_reject(
    data: ApprovalDecision,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Approve or reject a pending vendor selection"""
    rfp = get_rfp(db, data.rfp_id)
    rfp_service.decide_approval(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp.id))


@router.get("/{rfp_id}")
async def get_rfp_detail(rfp_id: int, db: Session = Depends(get_db)):
    """Get RFP by ID with items, suppliers and quotations"""
    return serialize_rfp(get_rfp(db, rfp_id))


@router.put("/{rfp_id}")
async def update_rfp(
    rfp_id: int,
    rfp_data: RFPUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Update RFP (header and items in DRAFT, header only in CREATED)"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.update_rfp(db, rfp, rfp_data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.delete("/{rfp_id}")
async def delete_rfp(
    rfp_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Delete RFP (soft delete, only in DRAFT or CREATED)"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.delete_rfp(db, rfp, actor)
    db.commit()
    return {"message": "RFP deleted successfully"}


@router.post("/{rfp_id}/submit")
async def submit_rfp(
    rfp_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Submit a DRAFT RFP"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.submit_rfp(db, rfp, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


# =============================================================================
# Floating / Suppliers
# =============================================================================

@router.post("/{rfp_id}/float")
async def float_rfp(
    rfp_id: int,
    data: RFPFloat,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Send the RFP to registered suppliers and/or unregistered vendors"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.float_rfp(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.post("/{rfp_id}/suppliers")
async def add_suppliers(
    rfp_id: int,
    data: RFPFloat,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Invite more suppliers to a floated RFP"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.add_suppliers(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.post("/{rfp_id}/extend")
async def extend_closing_date(
    rfp_id: int,
    data: RFPExtend,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Move the closing date later"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.extend_closing_date(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.patch("/{rfp_id}/items/{item_id}")
async def correct_item(
    rfp_id: int,
    item_id: int,
    data: RFPItemCorrection,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Administrative correction of an RFP item"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.correct_rfp_item(db, rfp, item_id, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


# =============================================================================
# Evaluation
# =============================================================================

@router.post("/{rfp_id}/evaluate")
async def evaluate_rfp(
    rfp_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Rank received quotations per item (L1, L2, ...)"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.evaluate_rfp(db, rfp, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


# =============================================================================
# Cancel / Close
# =============================================================================

@router.post("/{rfp_id}/cancel")
async def cancel_rfp(
    rfp_id: int,
    cancel_data: RFPCancel,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Cancel RFP"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.cancel_rfp(db, rfp, cancel_data.reason, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.post("/{rfp_id}/close")
async def close_rfp(
    rfp_id: int,
    close_data: Optional[RFPClose] = None,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Close an approved RFP"""
    rfp = get_rfp(db, rfp_id)
    rfp_service.close_rfp(db, rfp, actor, remarks=close_data.remarks if close_data else None)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


# =============================================================================
# Summary / Timeline
# =============================================================================

@router.get("/{rfp_id}/summary")
async def get_summary(rfp_id: int, db: Session = Depends(get_db)):
    """Supplier and quotation counts with approval state"""
    return rfp_service.build_rfp_summary(get_rfp(db, rfp_id))


@router.get("/{rfp_id}/timeline")
async def get_timeline(
    rfp_id: int,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """Get RFP timeline / audit trail"""
    rfp = get_rfp(db, rfp_id)
    entries, total = rfp_service.get_timeline(db, rfp.id, page=page, size=size)

    return {
        "entries": [rfp_service.format_timeline_entry(e) for e in entries],
        "total": total,
        "page": page,
        "size": size
    }
