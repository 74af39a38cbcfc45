"""
Quotation API Endpoints

Supplier quotations on an RFP: submit, negotiate, re-submit, withdraw.
Every endpoint returns the full updated RFP.
"""
from typing import Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from procureflow.database import get_db
from procureflow.api.auth import get_current_actor
from procureflow.api.rfp import serialize_rfp
from procureflow.schemas import QuotationSubmit, QuotationResubmit, QuotationNegotiate, QuotationWithdraw
from procureflow.services import quotation_service
from procureflow.services.rfp_service import get_rfp

router = APIRouter()


@router.post("/{rfp_id}/quotations", status_code=status.HTTP_201_CREATED)
async def submit_quotation(
    rfp_id: int,
    data: QuotationSubmit,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Record a supplier's first quotation on the RFP"""
    rfp = get_rfp(db, rfp_id)
    quotation_service.submit_quotation(db, rfp, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.put("/{rfp_id}/quotations/{quotation_id}")
async def resubmit_quotation(
    rfp_id: int,
    quotation_id: int,
    data: QuotationResubmit,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Re-submit prices of a quotation under negotiation (prices may only go down)"""
    rfp = get_rfp(db, rfp_id)
    quotation = quotation_service.get_quotation(db, quotation_id)
    quotation_service.resubmit_quotation(db, rfp, quotation, data, actor)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.post("/quotations/{quotation_id}/negotiate")
async def negotiate_quotation(
    quotation_id: int,
    data: Optional[QuotationNegotiate] = None,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Ask the supplier for a better price"""
    quotation = quotation_service.get_quotation(db, quotation_id)
    rfp_id = quotation.rfp_id
    quotation_service.negotiate_quotation(
        db, quotation, actor, notes=data.notes if data else None,
        expected_version=data.expected_version if data else None
    )
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))


@router.post("/quotations/{quotation_id}/withdraw")
async def withdraw_quotation(
    quotation_id: int,
    data: Optional[QuotationWithdraw] = None,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Withdraw a quotation; the supplier may submit a new one"""
    quotation = quotation_service.get_quotation(db, quotation_id)
    rfp_id = quotation.rfp_id
    quotation_service.withdraw_quotation(db, quotation, actor, reason=data.reason if data else None)
    db.commit()
    return serialize_rfp(get_rfp(db, rfp_id))
