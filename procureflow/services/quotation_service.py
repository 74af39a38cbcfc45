"""
Quotation Lifecycle Service

Supplier quotations against a floated RFP:
- submission (item join by RFP item id or normalized name)
- negotiation requests and re-submission under the price ratchet
- withdrawal
- L1/L2 ranking used by evaluation
"""
import json
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple
from sqlalchemy.orm import Session

from procureflow.exceptions import NotFound, PriceRatchetViolation, StateTransitionError, ValidationError
from procureflow.models import (
    RFP, RFPItem, RFPQuotation, RFPQuotationItem, RFPQuotationRevision, RFPSupplier,
    RANKED_QUOTATION_STATUSES
)
from procureflow.schemas import QuotationItemInput, QuotationResubmit, QuotationSubmit
from procureflow.services.rfp_service import (
    log_rfp_action, transition_rfp, ensure_no_pending_approval, ensure_not_terminal
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")

# Statuses that accept new quotations
OPEN_FOR_QUOTATION = ("FLOATED", "NEGOTIATION")

# Quotation statuses that can no longer change
FINAL_QUOTATION_STATUSES = ("SELECTED", "REJECTED", "WITHDRAWN")


def money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def compute_line_totals(quantity: Decimal, unit_price: Decimal, tax_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """
    (subtotal, tax, total) for one quotation line.
    total = quantity x unit_price x (1 + tax_rate/100), rounded half-up to 2 places.
    """
    subtotal = money(quantity * unit_price)
    total = money(quantity * unit_price * (1 + tax_rate / HUNDRED))
    return subtotal, total - subtotal, total


def normalize_item_name(name: Optional[str]) -> str:
    """Join key for items referenced by name: case-folded, whitespace collapsed"""
    return " ".join((name or "").split()).casefold()


def check_version(quotation: RFPQuotation, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != quotation.version:
        raise StateTransitionError(
            f"Quotation {quotation.quotation_number} was modified by someone else "
            f"(version {quotation.version}, expected {expected_version}). Reload and try again."
        )


def get_quotation(db: Session, quotation_id: int) -> RFPQuotation:
    """Get quotation by ID or raise NotFound"""
    quotation = db.query(RFPQuotation).filter(RFPQuotation.id == quotation_id).first()
    if not quotation or quotation.rfp.deleted_at is not None:
        raise NotFound(f"Quotation {quotation_id} not found")
    return quotation


# =============================================================================
# Item resolution
# =============================================================================

def resolve_quotation_items(
    rfp: RFP,
    items: List[QuotationItemInput]
) -> List[Tuple[RFPItem, QuotationItemInput]]:
    """
    Pair every quoted line with its RFP item.
    Lines reference the item by id, or by normalized name when the id is omitted.
    All problems are collected into one ValidationError.
    """
    by_id = {item.id: item for item in rfp.items}
    by_name: Dict[str, List[RFPItem]] = {}
    for item in rfp.items:
        by_name.setdefault(normalize_item_name(item.item_name), []).append(item)

    errors = []
    resolved = []
    seen = set()

    for idx, line in enumerate(items, 1):
        label = line.item_name or (f"item {line.rfp_item_id}" if line.rfp_item_id else f"line {idx}")
        rfp_item = None

        if line.rfp_item_id is not None:
            rfp_item = by_id.get(line.rfp_item_id)
            if rfp_item is None:
                errors.append(f"Line {idx}: item {line.rfp_item_id} is not part of RFP {rfp.rfp_number}")
        elif line.item_name and line.item_name.strip():
            matches = by_name.get(normalize_item_name(line.item_name), [])
            if len(matches) == 1:
                rfp_item = matches[0]
            elif not matches:
                errors.append(f"Line {idx}: '{line.item_name}' does not match any item of RFP {rfp.rfp_number}")
            else:
                errors.append(f"Line {idx}: '{line.item_name}' matches several RFP items, pass rfp_item_id")
        else:
            errors.append(f"Line {idx}: rfp_item_id or item_name is required")

        if line.unit_price is None or line.unit_price < 0:
            errors.append(f"Line {idx}: unit price for {label} cannot be negative")
        if line.tax_rate is not None and line.tax_rate < 0:
            errors.append(f"Line {idx}: tax rate for {label} cannot be negative")
        if line.quantity is not None and line.quantity <= 0:
            errors.append(f"Line {idx}: quantity for {label} must be greater than 0")

        if rfp_item is not None:
            if rfp_item.id in seen:
                errors.append(f"Line {idx}: '{rfp_item.item_name}' is quoted more than once")
            seen.add(rfp_item.id)
            resolved.append((rfp_item, line))

    if errors:
        raise ValidationError("Quotation has invalid items", errors)

    return resolved


def _apply_items(quotation: RFPQuotation, resolved: List[Tuple[RFPItem, QuotationItemInput]]) -> None:
    """Replace the quotation lines and recompute its totals"""
    quotation.items.clear()

    subtotal = tax_total = net_total = Decimal("0")
    for rfp_item, line in resolved:
        quantity = line.quantity if line.quantity is not None else Decimal(str(rfp_item.quantity))
        tax_rate = line.tax_rate if line.tax_rate is not None else Decimal("0")
        unit_price = money(line.unit_price)
        line_subtotal, line_tax, line_total = compute_line_totals(quantity, unit_price, tax_rate)

        quotation.items.append(RFPQuotationItem(
            rfp_item_id=rfp_item.id,
            item_name=rfp_item.item_name,
            quantity=quantity,
            unit_of_measurement=rfp_item.unit_of_measurement,
            unit_price=unit_price,
            tax_rate=tax_rate,
            tax_amount=line_tax,
            total_price=line_total,
            delivery_time=line.delivery_time,
            remarks=line.remarks
        ))
        subtotal += line_subtotal
        tax_total += line_tax
        net_total += line_total

    quotation.subtotal = subtotal
    quotation.tax_amount = tax_total
    quotation.net_amount = net_total


def _record_revision(db: Session, quotation: RFPQuotation, actor: Optional[str]) -> RFPQuotationRevision:
    """Snapshot of the prices accepted at this submission"""
    revision = RFPQuotationRevision(
        round_number=len(quotation.revisions),
        prices=json.dumps({str(qi.rfp_item_id): str(qi.unit_price) for qi in quotation.items}),
        net_amount=quotation.net_amount,
        submitted_at=datetime.utcnow(),
        submitted_by=actor
    )
    quotation.revisions.append(revision)
    return revision


def ratchet_prices(quotation: RFPQuotation) -> Dict[int, Decimal]:
    """Lowest unit price ever accepted per RFP item, over every revision and the current lines"""
    prices = {qi.rfp_item_id: Decimal(str(qi.unit_price)) for qi in quotation.items}
    for revision in quotation.revisions:
        for item_id, price in json.loads(revision.prices).items():
            item_id, price = int(item_id), Decimal(price)
            if item_id not in prices or price < prices[item_id]:
                prices[item_id] = price
    return prices


def generate_quotation_number(rfp: RFP) -> str:
    """Q-<rfp number>-NNN, unique within the RFP"""
    taken = {q.quotation_number for q in rfp.quotations}
    seq = len(rfp.quotations) + 1
    while f"Q-{rfp.rfp_number}-{seq:03d}" in taken:
        seq += 1
    return f"Q-{rfp.rfp_number}-{seq:03d}"


def _find_invitation(rfp: RFP, supplier_id: int) -> Optional[RFPSupplier]:
    return next((s for s in rfp.suppliers if s.supplier_id == supplier_id), None)


# =============================================================================
# Submit
# =============================================================================

def submit_quotation(db: Session, rfp: RFP, data: QuotationSubmit, actor: Optional[str]) -> RFPQuotation:
    """First submission of a supplier's quotation"""
    if rfp.status not in OPEN_FOR_QUOTATION:
        raise StateTransitionError(f"RFP {rfp.rfp_number} is {rfp.status} and not accepting quotations")
    ensure_no_pending_approval(rfp, "submit a quotation")

    invitation = _find_invitation(rfp, data.supplier_id)
    if invitation is None:
        raise StateTransitionError(f"Supplier {data.supplier_id} was not invited to RFP {rfp.rfp_number}")

    existing = next(
        (q for q in rfp.quotations if q.supplier_id == data.supplier_id and q.status != "WITHDRAWN"),
        None
    )
    if existing is not None:
        raise StateTransitionError(
            f"{invitation.supplier_name} already has quotation {existing.quotation_number} "
            f"({existing.status}) on this RFP; re-submit it instead"
        )

    quotation_number = data.quotation_number.strip() if data.quotation_number else None
    if quotation_number:
        if any(q.quotation_number == quotation_number for q in rfp.quotations):
            raise ValidationError(f"Quotation number {quotation_number} is already used on this RFP")
    else:
        quotation_number = generate_quotation_number(rfp)

    resolved = resolve_quotation_items(rfp, data.items)

    now = datetime.utcnow()
    quotation = RFPQuotation(
        supplier_id=data.supplier_id,
        quotation_number=quotation_number,
        quotation_date=data.quotation_date or now.date(),
        validity_date=data.validity_date,
        payment_terms=data.payment_terms,
        delivery_terms=data.delivery_terms,
        currency=data.currency,
        status="SUBMITTED",
        negotiation_round=0,
        remarks=data.remarks,
        version=1,
        submitted_at=now,
        last_submitted_at=now
    )
    _apply_items(quotation, resolved)
    rfp.quotations.append(quotation)
    db.flush()

    _record_revision(db, quotation, actor)

    invitation.response_received = True
    invitation.response_at = now
    invitation.status = "RESPONDED"

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="quotation_submitted",
        actor=actor,
        category="quotation",
        new_value=f"{quotation.net_amount:,.2f}",
        details={
            "quotation_id": quotation.id,
            "quotation_number": quotation.quotation_number,
            "supplier_id": quotation.supplier_id,
            "supplier_name": invitation.supplier_name,
            "net_amount": str(quotation.net_amount)
        }
    )
    logger.info(f"Quotation {quotation.quotation_number} submitted on RFP {rfp.rfp_number}")
    return quotation


# =============================================================================
# Negotiate / Re-submit / Withdraw
# =============================================================================

def negotiate_quotation(
    db: Session,
    quotation: RFPQuotation,
    actor: Optional[str],
    notes: Optional[str] = None,
    expected_version: Optional[int] = None
) -> RFPQuotation:
    """SUBMITTED -> NEGOTIATION; a floated or rejected RFP moves to NEGOTIATION"""
    rfp = quotation.rfp
    ensure_not_terminal(rfp, "negotiate")
    ensure_no_pending_approval(rfp, "negotiate")
    if rfp.status not in ("FLOATED", "NEGOTIATION", "REJECTED"):
        raise StateTransitionError(f"Cannot negotiate on RFP in '{rfp.status}' status")
    if quotation.status != "SUBMITTED":
        raise StateTransitionError(
            f"Only SUBMITTED quotations can be negotiated; {quotation.quotation_number} is {quotation.status}"
        )
    check_version(quotation, expected_version)

    quotation.status = "NEGOTIATION"
    quotation.negotiation_round = (quotation.negotiation_round or 0) + 1
    if notes and notes.strip():
        entry = f"[Round {quotation.negotiation_round}] {notes.strip()}"
        quotation.negotiation_notes = f"{quotation.negotiation_notes}\n{entry}" if quotation.negotiation_notes else entry
    quotation.version += 1

    if rfp.status in ("FLOATED", "REJECTED"):
        transition_rfp(db, rfp, "NEGOTIATION", actor, reason=f"Negotiation on {quotation.quotation_number}")

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="quotation_negotiated",
        actor=actor,
        category="quotation",
        old_value="SUBMITTED",
        new_value="NEGOTIATION",
        details={
            "quotation_id": quotation.id,
            "quotation_number": quotation.quotation_number,
            "round": quotation.negotiation_round,
            "notes": notes
        }
    )
    return quotation


def resubmit_quotation(
    db: Session,
    rfp: RFP,
    quotation: RFPQuotation,
    data: QuotationResubmit,
    actor: Optional[str]
) -> RFPQuotation:
    """
    Replace the prices of a quotation under negotiation.
    No unit price may exceed the price of the previous submission; one
    violation rejects the whole re-submission and nothing changes.
    """
    if quotation.rfp_id != rfp.id:
        raise NotFound(f"Quotation {quotation.id} not found on RFP {rfp.rfp_number}")
    ensure_not_terminal(rfp, "re-submit a quotation")
    ensure_no_pending_approval(rfp, "re-submit a quotation")
    if quotation.status != "NEGOTIATION":
        raise StateTransitionError(
            f"Only quotations under negotiation can be re-submitted; {quotation.quotation_number} is {quotation.status}"
        )
    check_version(quotation, data.expected_version)

    resolved = resolve_quotation_items(rfp, data.items)

    quoted_quantities = {qi.rfp_item_id: qi.quantity for qi in quotation.items}
    errors = []
    pinned = []
    for rfp_item, line in resolved:
        quoted = Decimal(str(quoted_quantities.get(rfp_item.id, rfp_item.quantity)))
        if line.quantity is not None and line.quantity != quoted:
            errors.append(f"Quantity of '{rfp_item.item_name}' is fixed at {quoted.normalize():f} during negotiation")
        pinned.append((rfp_item, line.model_copy(update={"quantity": quoted})))
    resolved = pinned
    if errors:
        raise ValidationError("Quotation has invalid items", errors)

    previous_prices = ratchet_prices(quotation)
    for rfp_item, line in resolved:
        previous = previous_prices.get(rfp_item.id)
        offered = money(line.unit_price)
        if previous is not None and offered > previous:
            logger.warning(
                f"Price ratchet rejected on {quotation.quotation_number}: "
                f"'{rfp_item.item_name}' {previous} -> {offered}"
            )
            raise PriceRatchetViolation(rfp_item.item_name, previous, offered)

    old_net = quotation.net_amount
    _apply_items(quotation, resolved)
    if data.payment_terms is not None:
        quotation.payment_terms = data.payment_terms
    if data.remarks is not None:
        quotation.remarks = data.remarks
    quotation.last_submitted_at = datetime.utcnow()
    quotation.version += 1
    db.flush()

    revision = _record_revision(db, quotation, actor)

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="quotation_resubmitted",
        actor=actor,
        category="quotation",
        old_value=f"{old_net:,.2f}",
        new_value=f"{quotation.net_amount:,.2f}",
        details={
            "quotation_id": quotation.id,
            "quotation_number": quotation.quotation_number,
            "revision": revision.round_number
        }
    )
    logger.info(f"Quotation {quotation.quotation_number} re-submitted: {old_net} -> {quotation.net_amount}")
    return quotation


def withdraw_quotation(
    db: Session,
    quotation: RFPQuotation,
    actor: Optional[str],
    reason: Optional[str] = None
) -> RFPQuotation:
    """Any non-final quotation -> WITHDRAWN; the supplier may submit again afterwards"""
    rfp = quotation.rfp
    ensure_not_terminal(rfp, "withdraw a quotation")
    ensure_no_pending_approval(rfp, "withdraw a quotation")
    if quotation.status in FINAL_QUOTATION_STATUSES:
        raise StateTransitionError(f"Quotation {quotation.quotation_number} is already {quotation.status}")

    old_status = quotation.status
    quotation.status = "WITHDRAWN"
    quotation.ranking = None
    for qi in quotation.items:
        qi.rank = None
    quotation.version += 1

    invitation = _find_invitation(rfp, quotation.supplier_id)
    if invitation is not None:
        invitation.status = "WITHDRAWN"

    log_rfp_action(
        db=db,
        rfp_id=rfp.id,
        action="quotation_withdrawn",
        actor=actor,
        category="quotation",
        old_value=old_status,
        new_value="WITHDRAWN",
        details={
            "quotation_id": quotation.id,
            "quotation_number": quotation.quotation_number,
            "reason": reason
        }
    )
    return quotation


# =============================================================================
# Ranking
# =============================================================================

def _bid_order(quotation: RFPQuotation, price: Decimal):
    return (price, quotation.submitted_at or datetime.max, quotation.id)


def rank_quotations(rfp: RFP) -> List[dict]:
    """
    Write per-item ranks (L1 = 1) and the overall quotation ranking.
    Items: ascending unit price, then earliest submission, then quotation id.
    Quotations: ascending net amount with the same tie-breaks.
    """
    ranked = [q for q in rfp.quotations if q.status in RANKED_QUOTATION_STATUSES]

    for quotation in rfp.quotations:
        if quotation.status not in RANKED_QUOTATION_STATUSES:
            quotation.ranking = None
            for qi in quotation.items:
                qi.rank = None

    for rfp_item in rfp.items:
        bids = [(q, qi) for q in ranked for qi in q.items if qi.rfp_item_id == rfp_item.id]
        bids.sort(key=lambda bid: _bid_order(bid[0], bid[1].unit_price))
        for position, (_, qi) in enumerate(bids, 1):
            qi.rank = position

    ranked.sort(key=lambda q: _bid_order(q, q.net_amount))
    for position, quotation in enumerate(ranked, 1):
        quotation.ranking = position

    return [
        {
            "quotation_id": q.id,
            "quotation_number": q.quotation_number,
            "supplier_id": q.supplier_id,
            "ranking": q.ranking,
            "net_amount": str(q.net_amount)
        }
        for q in ranked
    ]
