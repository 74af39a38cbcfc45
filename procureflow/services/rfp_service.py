"""
RFP (Request for Proposal) Service

Provides business logic for RFP operations including:
- RFP number generation
- Audit trail logging
- Status transitions
- Floating to suppliers
- Evaluation, approval request and approval decision
- Creation from approved purchase requests

Functions here mutate the session and never commit; the API layer owns the
transaction.
"""
import json
import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from procureflow.exceptions import NotFound, StateTransitionError, ValidationError
from procureflow.models import (
    RFP, RFPItem, RFPSupplier, RFPQuotation, RFPAuditTrail,
    Supplier, ItemMaster, PurchaseRequest, PurchaseRequestLine
)
from procureflow.schemas import (
    RFPCreate, RFPUpdate, RFPItemCreate, RFPItemCorrection, RFPFromPurchaseRequests,
    RFPFloat, RFPExtend, SendForApproval, ApprovalDecision
)
from procureflow.services.vendor_selection import build_approval_request

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


# =============================================================================
# RFP Number Generation
# =============================================================================

def generate_rfp_number(db: Session) -> str:
    """
    Generate unique RFP number in format: RFP-YYYY-NNNNN
    Example: RFP-2026-00001
    """
    year = datetime.now().year

    last_rfp = db.query(RFP).filter(
        RFP.rfp_number.like(f"RFP-{year}-%")
    ).order_by(RFP.id.desc()).first()

    if last_rfp:
        try:
            new_seq = int(last_rfp.rfp_number.split('-')[-1]) + 1
        except (ValueError, IndexError):
            new_seq = 1
    else:
        new_seq = 1

    return f"RFP-{year}-{new_seq:05d}"


# =============================================================================
# Audit Trail Logging
# =============================================================================

def log_rfp_action(
    db: Session,
    rfp_id: int,
    action: str,
    actor: Optional[str],
    category: str = "rfp",
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> RFPAuditTrail:
    """
    Log an action to the RFP audit trail.

    Args:
        db: Database session
        rfp_id: RFP ID
        action: Action type (created, floated, quotation_submitted, etc.)
        actor: Name of the user who performed the action
        category: Action category (rfp, item, supplier, quotation, status, approval)
        old_value: Previous value (for updates)
        new_value: New value (for updates)
        details: Additional context as dictionary

    Returns:
        Created audit trail entry
    """
    audit = RFPAuditTrail(
        rfp_id=rfp_id,
        action=action,
        action_category=category,
        action_by=actor,
        action_at=datetime.utcnow(),
        old_value=old_value,
        new_value=new_value,
        details=json.dumps(details, default=str) if details else None
    )
    db.add(audit)
    # Don't commit - let caller handle transaction
    return audit


def log_rfp_created(db: Session, rfp: RFP, actor: Optional[str]) -> RFPAuditTrail:
    """Log RFP creation"""
    return log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="created",
        actor=actor,
        category="rfp",
        new_value=rfp.rfp_number,
        details={
            "closing_date": rfp.closing_date.isoformat() if rfp.closing_date else None,
            "item_count": len(rfp.items),
            "department": rfp.department
        }
    )


def log_rfp_status_change(
    db: Session,
    rfp_id: int,
    actor: Optional[str],
    old_status: str,
    new_status: str,
    reason: Optional[str] = None
) -> RFPAuditTrail:
    """Log RFP status change"""
    details = {"reason": reason} if reason else None
    return log_rfp_action(
        db=db,
        rfp_id=rfp_id,
        action="status_changed",
        actor=actor,
        category="status",
        old_value=old_status,
        new_value=new_status,
        details=details
    )


def log_supplier_invited(db: Session, rfp_id: int, actor: Optional[str], invitation: RFPSupplier) -> RFPAuditTrail:
    """Log supplier invited to quote"""
    return log_rfp_action(
        db=db,
        rfp_id=rfp_id,
        action="supplier_invited",
        actor=actor,
        category="supplier",
        new_value=invitation.supplier_name,
        details={
            "supplier_id": invitation.supplier_id,
            "contact_email": invitation.contact_email
        }
    )


def log_item_corrected(
    db: Session,
    rfp_id: int,
    actor: Optional[str],
    item: RFPItem,
    changes: Dict[str, Tuple[Any, Any]],
    reason: str
) -> RFPAuditTrail:
    """Log administrative correction of an RFP item"""
    return log_rfp_action(
        db=db,
        rfp_id=rfp_id,
        action="item_corrected",
        actor=actor,
        category="item",
        old_value=", ".join(f"{field}={old}" for field, (old, _) in changes.items()),
        new_value=", ".join(f"{field}={new}" for field, (_, new) in changes.items()),
        details={"item_id": item.id, "item_name": item.item_name, "reason": reason}
    )


# =============================================================================
# Status Transition Validation
# =============================================================================

TERMINAL_STATUSES = ("CLOSED", "CANCELLED")

# Valid status transitions
RFP_STATUS_TRANSITIONS = {
    "DRAFT": ["CREATED", "CANCELLED"],
    "CREATED": ["FLOATED", "CANCELLED"],
    "FLOATED": ["NEGOTIATION", "APPROVED", "REJECTED", "CANCELLED"],
    "NEGOTIATION": ["APPROVED", "REJECTED", "CANCELLED"],
    "REJECTED": ["NEGOTIATION", "APPROVED", "CANCELLED"],
    "APPROVED": ["CLOSED", "CANCELLED"],
    "CLOSED": [],  # Terminal state
    "CANCELLED": []  # Terminal state
}

# Statuses from which a vendor selection can be sent for approval
APPROVAL_SOURCE_STATUSES = ("FLOATED", "NEGOTIATION", "REJECTED")


def can_transition_status(current_status: str, new_status: str) -> bool:
    """Check if status transition is valid"""
    valid_transitions = RFP_STATUS_TRANSITIONS.get(current_status, [])
    return new_status in valid_transitions


def transition_rfp(
    db: Session,
    rfp: RFP,
    new_status: str,
    actor: Optional[str],
    reason: Optional[str] = None
) -> None:
    """Move the RFP along one edge of the status table, or raise StateTransitionError"""
    old_status = rfp.status
    if not can_transition_status(old_status, new_status):
        raise StateTransitionError(f"Cannot move RFP {rfp.rfp_number} from {old_status} to {new_status}")

    rfp.status = new_status
    log_rfp_status_change(db, rfp.id, actor, old_status, new_status, reason)
    logger.info(f"RFP {rfp.rfp_number}: {old_status} -> {new_status}")


def is_approval_pending(rfp: RFP) -> bool:
    return rfp.approval_status == "PENDING"


def is_reviewable(rfp: RFP) -> bool:
    """A floated RFP that has received at least one quotation"""
    if rfp.status != "FLOATED":
        return False
    return any(q.status != "WITHDRAWN" for q in rfp.quotations)


def effective_status(rfp: RFP) -> str:
    """Stored status, with IN_REVIEW derived for floated RFPs holding quotations"""
    return "IN_REVIEW" if is_reviewable(rfp) else rfp.status


def ensure_not_terminal(rfp: RFP, operation: str) -> None:
    if rfp.status in TERMINAL_STATUSES:
        raise StateTransitionError(f"Cannot {operation}: RFP {rfp.rfp_number} is {rfp.status}")


def ensure_no_pending_approval(rfp: RFP, operation: str) -> None:
    if is_approval_pending(rfp):
        raise StateTransitionError(f"Cannot {operation}: RFP {rfp.rfp_number} is pending approval")


# =============================================================================
# Lookup
# =============================================================================

def get_rfp(db: Session, rfp_id: int) -> RFP:
    """Get RFP by ID or raise NotFound"""
    rfp = db.query(RFP).options(
        joinedload(RFP.items),
        joinedload(RFP.suppliers),
        joinedload(RFP.quotations).joinedload(RFPQuotation.items)
    ).filter(
        RFP.id == rfp_id,
        RFP.deleted_at.is_(None)
    ).first()

    if not rfp:
        raise NotFound(f"RFP {rfp_id} not found")

    return rfp


def list_rfps(
    db: Session,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    size: int = 50
) -> Tuple[List[RFP], int]:
    query = db.query(RFP).filter(RFP.deleted_at.is_(None))

    if status:
        query = query.filter(RFP.status == status.upper())
    if search:
        search_term = f"%{search}%"
        query = query.filter(RFP.rfp_number.ilike(search_term))

    total = query.count()
    offset = (page - 1) * size
    rfps = query.order_by(RFP.created_at.desc(), RFP.id.desc()).offset(offset).limit(size).all()
    return rfps, total


def list_waiting_for_approval(db: Session) -> List[RFP]:
    return db.query(RFP).filter(
        RFP.deleted_at.is_(None),
        RFP.approval_status == "PENDING"
    ).order_by(RFP.approval_requested_at, RFP.id).all()


# =============================================================================
# Create / Update / Submit / Delete
# =============================================================================

def money(value) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def compute_item_grand_total(item: RFPItem) -> Optional[Decimal]:
    """quantity x unit price, target price first, indicative price as fallback"""
    price = item.target_unit_price if item.target_unit_price is not None else item.indicative_price
    if price is None or item.quantity is None:
        return None
    return money(Decimal(str(item.quantity)) * Decimal(str(price)))


def _new_item(line_number: int, data: RFPItemCreate) -> RFPItem:
    item = RFPItem(
        line_number=line_number,
        item_name=data.item_name.strip(),
        item_code=data.item_code,
        quantity=data.quantity,
        unit_of_measurement=data.unit_of_measurement,
        category=data.category,
        sub_category=data.sub_category,
        indicative_price=data.indicative_price,
        target_unit_price=data.target_unit_price,
        specifications=data.specifications,
        remarks=data.remarks
    )
    item.grand_total = compute_item_grand_total(item)
    return item


def _check_rfp_number_free(db: Session, rfp_number: str) -> None:
    exists = db.query(RFP.id).filter(RFP.rfp_number == rfp_number).first()
    if exists:
        raise ValidationError(f"RFP number {rfp_number} is already in use")


def create_rfp(db: Session, data: RFPCreate, actor: Optional[str]) -> RFP:
    """Create a DRAFT RFP with its items"""
    request_date = data.request_date or date.today()
    if data.closing_date < request_date:
        raise ValidationError("Closing date cannot be before the request date")

    if data.rfp_number:
        _check_rfp_number_free(db, data.rfp_number)

    rfp = RFP(
        rfp_number=data.rfp_number or generate_rfp_number(db),
        request_date=request_date,
        closing_date=data.closing_date,
        requested_by=data.requested_by or actor,
        department=data.department,
        payment_terms=data.payment_terms,
        remarks=data.remarks,
        status="DRAFT",
        approval_status="NONE",
        created_by=actor
    )
    for idx, item_data in enumerate(data.items, 1):
        rfp.items.append(_new_item(idx, item_data))

    db.add(rfp)
    db.flush()

    log_rfp_created(db, rfp, actor)
    logger.info(f"Created RFP {rfp.rfp_number} with {len(rfp.items)} items")
    return rfp


def update_rfp(db: Session, rfp: RFP, data: RFPUpdate, actor: Optional[str]) -> RFP:
    """
    DRAFT: header and items can change.
    CREATED: header only; items are changed through item correction.
    """
    if rfp.status not in ("DRAFT", "CREATED"):
        raise StateTransitionError(f"Cannot update RFP {rfp.rfp_number} in {rfp.status} status")

    update_data = data.model_dump(exclude_unset=True)
    items = update_data.pop("items", None)
    if update_data.get("closing_date", date.min) is None:
        raise ValidationError("Closing date cannot be cleared")

    if items is not None and rfp.status != "DRAFT":
        raise StateTransitionError("Items can only be replaced while the RFP is DRAFT")

    closing_date = update_data.get("closing_date")
    if closing_date and closing_date < rfp.request_date:
        raise ValidationError("Closing date cannot be before the request date")

    changed = []
    for field, value in update_data.items():
        if getattr(rfp, field) != value:
            setattr(rfp, field, value)
            changed.append(field)

    if items is not None:
        rfp.items.clear()
        db.flush()
        for idx, item_data in enumerate(data.items, 1):
            rfp.items.append(_new_item(idx, item_data))
        changed.append("items")

    if changed:
        log_rfp_action(
            db=db,
            rfp_id=rfp.id,
            action="updated",
            actor=actor,
            category="rfp",
            new_value=", ".join(changed),
            details={"fields": changed}
        )
    return rfp


def submit_rfp(db: Session, rfp: RFP, actor: Optional[str]) -> RFP:
    """DRAFT -> CREATED"""
    if rfp.status != "DRAFT":
        raise StateTransitionError(f"Cannot submit RFP in '{rfp.status}' status")
    if not rfp.items:
        raise ValidationError("RFP must have at least one item")

    transition_rfp(db, rfp, "CREATED", actor)
    return rfp


def _release_purchase_requests(db: Session, rfp: RFP) -> None:
    """Linked purchase requests go back to APPROVED so they can be used again"""
    requests = db.query(PurchaseRequest).filter(PurchaseRequest.rfp_id == rfp.id).all()
    for pr in requests:
        pr.status = "APPROVED"
        pr.rfp_id = None


def delete_rfp(db: Session, rfp: RFP, actor: Optional[str]) -> None:
    """Soft delete, only while DRAFT or CREATED"""
    if rfp.status not in ("DRAFT", "CREATED"):
        raise StateTransitionError(f"Can only delete RFP in DRAFT or CREATED status, not {rfp.status}")

    rfp.deleted_at = datetime.utcnow()
    _release_purchase_requests(db, rfp)
    log_rfp_action(db, rfp.id, "deleted", actor, category="rfp", old_value=rfp.status)
    logger.info(f"Deleted RFP {rfp.rfp_number}")


def create_rfp_from_purchase_requests(db: Session, data: RFPFromPurchaseRequests, actor: Optional[str]) -> RFP:
    """
    Combine approved purchase requests into one DRAFT RFP.
    Each selected line becomes an RFP item; the requests move to RFP_CREATED.
    """
    ids = list(dict.fromkeys(data.purchase_request_ids))
    requests = db.query(PurchaseRequest).options(
        joinedload(PurchaseRequest.lines)
    ).filter(PurchaseRequest.id.in_(ids)).all()

    found = {pr.id: pr for pr in requests}
    missing = [str(pr_id) for pr_id in ids if pr_id not in found]
    if missing:
        raise NotFound(f"Purchase request(s) not found: {', '.join(missing)}")

    errors = [
        f"{found[pr_id].request_number} is {found[pr_id].status}, only APPROVED requests can be used"
        for pr_id in ids if found[pr_id].status != "APPROVED"
    ]

    lines: List[Tuple[PurchaseRequest, PurchaseRequestLine]] = [
        (found[pr_id], line) for pr_id in ids for line in found[pr_id].lines
    ]
    if data.line_ids is not None:
        wanted = set(data.line_ids)
        known = {line.id for _, line in lines}
        errors.extend(
            f"Line {line_id} does not belong to the selected purchase requests"
            for line_id in data.line_ids if line_id not in known
        )
        lines = [(pr, line) for pr, line in lines if line.id in wanted]

    if not lines and not errors:
        errors.append("No purchase request lines selected")
    if errors:
        raise ValidationError("Cannot create RFP from the selected purchase requests", errors)

    request_date = data.request_date or date.today()
    if data.closing_date < request_date:
        raise ValidationError("Closing date cannot be before the request date")
    if data.rfp_number:
        _check_rfp_number_free(db, data.rfp_number)

    item_codes = {}
    catalog_ids = {line.item_id for _, line in lines if line.item_id}
    if catalog_ids:
        item_codes = dict(
            db.query(ItemMaster.id, ItemMaster.item_code).filter(ItemMaster.id.in_(catalog_ids)).all()
        )

    requesters = list(dict.fromkeys(pr.requested_by for pr in requests if pr.requested_by))
    rfp = RFP(
        rfp_number=data.rfp_number or generate_rfp_number(db),
        request_date=request_date,
        closing_date=data.closing_date,
        requested_by=", ".join(requesters) or actor,
        department=data.department or next((pr.department for pr in requests if pr.department), None),
        payment_terms=data.payment_terms,
        remarks=data.remarks,
        status="DRAFT",
        approval_status="NONE",
        created_by=actor
    )

    for idx, (pr, line) in enumerate(lines, 1):
        unit_price = line.unit_price if line.unit_price else None
        item = RFPItem(
            line_number=idx,
            item_name=line.model_name or line.description,
            item_code=item_codes.get(line.item_id),
            quantity=line.quantity,
            unit_of_measurement=line.uom_name,
            category=line.category_name,
            sub_category=line.sub_category_name,
            indicative_price=unit_price,
            target_unit_price=unit_price,
            specifications=line.description,
            pr_line_id=line.id,
            pr_number=pr.request_number
        )
        item.grand_total = compute_item_grand_total(item)
        rfp.items.append(item)

    db.add(rfp)
    db.flush()

    for pr in requests:
        pr.status = "RFP_CREATED"
        pr.rfp_id = rfp.id

    log_rfp_created(db, rfp, actor)
    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="created_from_purchase_requests",
        actor=actor,
        category="rfp",
        new_value=", ".join(pr.request_number for pr in requests),
        details={"purchase_request_ids": ids, "line_count": len(lines)}
    )
    logger.info(f"Created RFP {rfp.rfp_number} from {len(requests)} purchase request(s)")
    return rfp


# =============================================================================
# Floating / Suppliers
# =============================================================================

def _find_or_create_unregistered_supplier(db: Session, email: str, name: Optional[str],
                                          contact_person: Optional[str]) -> Supplier:
    """Provisional supplier for a vendor invited by e-mail, reused by case-insensitive e-mail"""
    supplier = db.query(Supplier).filter(
        func.lower(Supplier.email) == email.lower()
    ).order_by(Supplier.is_registered.desc(), Supplier.id).first()

    if supplier:
        return supplier

    supplier = Supplier(
        name=name or email,
        contact_person=contact_person,
        email=email,
        is_registered=False,
        is_active=True
    )
    db.add(supplier)
    db.flush()
    logger.info(f"Created provisional supplier {supplier.id} for {email}")
    return supplier


def invite_recipients(db: Session, rfp: RFP, data: RFPFloat, actor: Optional[str]) -> List[RFPSupplier]:
    """
    Invite registered suppliers and unregistered vendors to an RFP.
    Suppliers already invited are skipped. Returns the new invitations.
    """
    if not data.supplier_ids and not data.unregistered_vendors:
        raise ValidationError("Select at least one supplier or enter an unregistered vendor e-mail")

    supplier_ids = list(dict.fromkeys(data.supplier_ids))
    suppliers = db.query(Supplier).filter(Supplier.id.in_(supplier_ids)).all() if supplier_ids else []
    by_id = {s.id: s for s in suppliers}
    unknown = [str(sid) for sid in supplier_ids if sid not in by_id]
    if unknown:
        raise NotFound(f"Supplier(s) not found: {', '.join(unknown)}")

    inactive = [by_id[sid].name for sid in supplier_ids if not by_id[sid].is_active]
    if inactive:
        raise ValidationError(f"Inactive supplier(s) cannot be invited: {', '.join(inactive)}")

    recipients = [(by_id[sid], None) for sid in supplier_ids]
    for vendor in data.unregistered_vendors:
        supplier = _find_or_create_unregistered_supplier(db, vendor.email, vendor.name, vendor.contact_person)
        recipients.append((supplier, vendor))

    already_invited = {invitation.supplier_id for invitation in rfp.suppliers}
    now = datetime.utcnow()
    invitations = []
    for supplier, vendor in recipients:
        if supplier.id in already_invited:
            continue
        already_invited.add(supplier.id)

        invitation = RFPSupplier(
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            contact_person=(vendor.contact_person if vendor else None) or supplier.contact_person,
            contact_email=(vendor.email if vendor else None) or supplier.email,
            invitation_sent=True,
            invitation_sent_at=now,
            response_received=False,
            status="INVITED"
        )
        rfp.suppliers.append(invitation)
        invitations.append(invitation)

    db.flush()
    for invitation in invitations:
        log_supplier_invited(db, rfp.id, actor, invitation)

    return invitations


def float_rfp(db: Session, rfp: RFP, data: RFPFloat, actor: Optional[str]) -> RFP:
    """CREATED -> FLOATED, inviting at least one supplier"""
    if rfp.status != "CREATED":
        raise StateTransitionError(f"Cannot float RFP in '{rfp.status}' status")
    if not data.supplier_ids and not data.unregistered_vendors:
        raise ValidationError("Select at least one supplier or enter an unregistered vendor e-mail")
    if rfp.closing_date <= date.today():
        raise ValidationError("Closing date must be after today before the RFP can be floated")

    invitations = invite_recipients(db, rfp, data, actor)
    rfp.floated_at = datetime.utcnow()
    transition_rfp(db, rfp, "FLOATED", actor, reason=f"Floated to {len(invitations)} supplier(s)")
    return rfp


def add_suppliers(db: Session, rfp: RFP, data: RFPFloat, actor: Optional[str]) -> RFP:
    """Invite more suppliers to a floated RFP"""
    if rfp.status not in ("FLOATED", "NEGOTIATION"):
        raise StateTransitionError(f"Cannot add suppliers to RFP in '{rfp.status}' status")

    invitations = invite_recipients(db, rfp, data, actor)
    logger.info(f"RFP {rfp.rfp_number}: {len(invitations)} supplier(s) added")
    return rfp


def extend_closing_date(db: Session, rfp: RFP, data: RFPExtend, actor: Optional[str]) -> RFP:
    ensure_not_terminal(rfp, "extend the closing date")
    if data.new_closing_date <= rfp.closing_date:
        raise ValidationError(
            f"New closing date must be after the current closing date ({rfp.closing_date.isoformat()})"
        )

    old_date = rfp.closing_date
    rfp.closing_date = data.new_closing_date
    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="closing_date_extended",
        actor=actor,
        category="rfp",
        old_value=old_date.isoformat(),
        new_value=data.new_closing_date.isoformat(),
        details={"reason": data.reason} if data.reason else None
    )
    return rfp


def correct_rfp_item(db: Session, rfp: RFP, item_id: int, data: RFPItemCorrection, actor: Optional[str]) -> RFP:
    """Administrative correction of an item; every change is audited with its reason"""
    ensure_not_terminal(rfp, "correct items")

    item = next((i for i in rfp.items if i.id == item_id), None)
    if item is None:
        raise NotFound(f"Item {item_id} not found on RFP {rfp.rfp_number}")

    update_data = {
        field: value for field, value in data.model_dump(exclude_unset=True).items() if value is not None
    }
    reason = update_data.pop("reason")

    if "quantity" in update_data:
        quoted = any(
            qi.rfp_item_id == item.id
            for q in rfp.quotations if q.status != "WITHDRAWN"
            for qi in q.items
        )
        if quoted and Decimal(str(update_data["quantity"])) != Decimal(str(item.quantity)):
            raise ValidationError(f"Quantity of '{item.item_name}' cannot change once it has been quoted")

    changes = {}
    for field, value in update_data.items():
        if field == "item_name":
            value = value.strip()
        old = getattr(item, field)
        if isinstance(old, Decimal):
            if Decimal(str(value)) == old:
                continue
        elif old == value:
            continue
        setattr(item, field, value)
        changes[field] = (old, value)

    if not changes:
        return rfp

    item.grand_total = compute_item_grand_total(item)
    log_item_corrected(db, rfp.id, actor, item, changes, reason)
    return rfp


# =============================================================================
# Cancel / Close
# =============================================================================

def cancel_rfp(db: Session, rfp: RFP, reason: str, actor: Optional[str]) -> RFP:
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to cancel an RFP")
    ensure_not_terminal(rfp, "cancel")

    transition_rfp(db, rfp, "CANCELLED", actor, reason=reason)
    rfp.cancelled_at = datetime.utcnow()
    rfp.cancellation_reason = reason
    if is_approval_pending(rfp):
        rfp.approval_status = "NONE"
    return rfp


def close_rfp(db: Session, rfp: RFP, actor: Optional[str], remarks: Optional[str] = None) -> RFP:
    """APPROVED -> CLOSED"""
    transition_rfp(db, rfp, "CLOSED", actor, reason=remarks)
    rfp.closed_at = datetime.utcnow()
    return rfp


# =============================================================================
# Evaluation
# =============================================================================

def evaluate_rfp(db: Session, rfp: RFP, actor: Optional[str]) -> RFP:
    """Recompute L1/L2/... ranks. Running it twice without changes gives the same ranks."""
    from procureflow.services.quotation_service import rank_quotations

    ensure_not_terminal(rfp, "evaluate")
    if not any(q.status in ("SUBMITTED", "NEGOTIATION") for q in rfp.quotations):
        raise StateTransitionError(
            f"RFP {rfp.rfp_number} has no submitted or negotiating quotations to evaluate"
        )

    ranking = rank_quotations(rfp)
    rfp.evaluated_at = datetime.utcnow()
    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="evaluated",
        actor=actor,
        category="quotation",
        new_value=f"{len(ranking)} quotation(s) ranked",
        details={"ranking": ranking}
    )
    return rfp


# =============================================================================
# Approval
# =============================================================================

def send_for_approval(db: Session, rfp: RFP, data: SendForApproval, actor: Optional[str]) -> RFP:
    """Store the aggregated vendor selection and mark the approval pending"""
    ensure_no_pending_approval(rfp, "send for approval")
    if rfp.status not in APPROVAL_SOURCE_STATUSES:
        raise StateTransitionError(f"Cannot send RFP in '{rfp.status}' status for approval")

    payload = build_approval_request(
        rfp,
        data.selections,
        approval_group=data.approval_group,
        competitive_bidding=data.competitive_bidding,
        lowest_bid_selected=data.lowest_bid_selected,
        justification=data.justification
    )

    rfp.approval_status = "PENDING"
    rfp.approval_group = payload["approval_group"]
    rfp.competitive_bidding = data.competitive_bidding
    rfp.lowest_bid_selected = data.lowest_bid_selected
    rfp.selection_justification = data.justification
    rfp.approval_request = json.dumps(payload)
    rfp.approval_requested_at = datetime.utcnow()
    rfp.approval_requested_by = actor
    rfp.decision_remarks = None
    rfp.decided_at = None
    rfp.decided_by = None

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="sent_for_approval",
        actor=actor,
        category="approval",
        new_value=payload["approval_group"],
        details={
            "grand_total": payload["grand_total"],
            "selected_supplier_ids": payload["selected_supplier_ids"],
            "lowest_bid_selected": data.lowest_bid_selected
        }
    )
    logger.info(f"RFP {rfp.rfp_number} sent for approval to {payload['approval_group']}")
    return rfp


def get_approval_request(rfp: RFP) -> Optional[dict]:
    return json.loads(rfp.approval_request) if rfp.approval_request else None


def decide_approval(db: Session, rfp: RFP, data: ApprovalDecision, actor: Optional[str]) -> RFP:
    """
    APPROVE: RFP -> APPROVED, selected quotations/suppliers SELECTED, other received ones REJECTED.
    REJECT: RFP -> REJECTED, selections kept, quotations untouched.
    """
    if not is_approval_pending(rfp):
        raise StateTransitionError(f"RFP {rfp.rfp_number} has no pending approval")

    remarks = data.remarks.strip() if data.remarks else None
    if data.action == "REJECT" and not remarks:
        raise ValidationError("Remarks are required when rejecting")

    if data.action == "APPROVE":
        transition_rfp(db, rfp, "APPROVED", actor, reason=remarks)
        payload = get_approval_request(rfp) or {}
        selected = set(payload.get("selected_supplier_ids", []))

        for quotation in rfp.quotations:
            if quotation.status in ("WITHDRAWN", "DRAFT"):
                continue
            quotation.status = "SELECTED" if quotation.supplier_id in selected else "REJECTED"
            quotation.version = (quotation.version or 1) + 1
        for invitation in rfp.suppliers:
            if invitation.supplier_id in selected:
                invitation.status = "SELECTED"
            elif invitation.response_received and invitation.status != "WITHDRAWN":
                invitation.status = "REJECTED"

        rfp.approval_status = "APPROVED"
    else:
        if rfp.status != "REJECTED":
            transition_rfp(db, rfp, "REJECTED", actor, reason=remarks)
        rfp.approval_status = "REJECTED"

    rfp.decision_remarks = remarks
    rfp.decided_at = datetime.utcnow()
    rfp.decided_by = actor

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="approved" if data.action == "APPROVE" else "rejected",
        actor=actor,
        category="approval",
        old_value="PENDING",
        new_value=rfp.approval_status,
        details={"remarks": remarks} if remarks else None
    )
    return rfp


# =============================================================================
# Summary / Timeline
# =============================================================================

def build_rfp_summary(rfp: RFP) -> dict:
    quotation_counts: Dict[str, int] = {}
    for quotation in rfp.quotations:
        quotation_counts[quotation.status] = quotation_counts.get(quotation.status, 0) + 1

    responded = sum(1 for s in rfp.suppliers if s.response_received)
    live = [q for q in rfp.quotations if q.status != "WITHDRAWN"]
    lowest = min((q.net_amount for q in live), default=None)

    return {
        "id": rfp.id,
        "rfp_number": rfp.rfp_number,
        "status": rfp.status,
        "effective_status": effective_status(rfp),
        "approval_status": rfp.approval_status,
        "closing_date": rfp.closing_date,
        "item_count": len(rfp.items),
        "suppliers": {
            "total": len(rfp.suppliers),
            "responded": responded,
            "pending": len(rfp.suppliers) - responded
        },
        "quotations": {
            "total": len(rfp.quotations),
            "by_status": quotation_counts
        },
        "lowest_net_amount": float(lowest) if lowest is not None else None,
        "evaluated_at": rfp.evaluated_at
    }


def get_timeline(db: Session, rfp_id: int, page: int = 1, size: int = 50) -> Tuple[List[RFPAuditTrail], int]:
    query = db.query(RFPAuditTrail).filter(RFPAuditTrail.rfp_id == rfp_id)
    total = query.count()

    offset = (page - 1) * size
    entries = query.order_by(
        RFPAuditTrail.action_at.desc(), RFPAuditTrail.id.desc()
    ).offset(offset).limit(size).all()
    return entries, total


def format_timeline_entry(entry: RFPAuditTrail) -> dict:
    """Format audit trail entry for timeline display"""
    action_descriptions = {
        "created": "RFP Created",
        "created_from_purchase_requests": "Created from Purchase Requests",
        "updated": "RFP Updated",
        "deleted": "RFP Deleted",
        "status_changed": "Status Changed",
        "supplier_invited": "Supplier Invited",
        "closing_date_extended": "Closing Date Extended",
        "item_corrected": "Item Corrected",
        "quotation_submitted": "Quotation Submitted",
        "quotation_negotiated": "Negotiation Requested",
        "quotation_resubmitted": "Quotation Re-submitted",
        "quotation_withdrawn": "Quotation Withdrawn",
        "evaluated": "Quotations Evaluated",
        "sent_for_approval": "Sent for Approval",
        "approved": "Approved",
        "rejected": "Rejected"
    }

    details = json.loads(entry.details) if entry.details else {}

    return {
        "id": entry.id,
        "action": entry.action,
        "action_title": action_descriptions.get(entry.action, entry.action.replace("_", " ").title()),
        "action_category": entry.action_category,
        "action_by": entry.action_by,
        "action_at": entry.action_at.isoformat() if entry.action_at else None,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "details": details
    }
