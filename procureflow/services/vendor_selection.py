"""
Vendor selection aggregation.

Builds the approval request payload from the per-item vendor selections made
by purchasing staff. Nothing is written to the session here; the RFP workflow
stores the returned payload.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from procureflow.exceptions import ValidationError
from procureflow.models import RFP, RFPQuotation, RFPQuotationItem, RANKED_QUOTATION_STATUSES
from procureflow.schemas import VendorSelectionInput


def collect_bids(rfp: RFP) -> Dict[int, List[Tuple[RFPQuotation, RFPQuotationItem]]]:
    """Live bids per RFP item id"""
    bids: Dict[int, List[Tuple[RFPQuotation, RFPQuotationItem]]] = {}
    for quotation in rfp.quotations:
        if quotation.status not in RANKED_QUOTATION_STATUSES:
            continue
        for quote_item in quotation.items:
            bids.setdefault(quote_item.rfp_item_id, []).append((quotation, quote_item))
    return bids


def _supplier_name(quotation: RFPQuotation) -> Optional[str]:
    return quotation.supplier.name if quotation.supplier else None


def build_approval_request(
    rfp: RFP,
    selections: List[VendorSelectionInput],
    approval_group: Optional[str],
    competitive_bidding: bool,
    lowest_bid_selected: bool,
    justification: Optional[str] = None
) -> dict:
    """
    Validate the selections and return the approval payload.

    Raises ValidationError listing every problem found:
    - approval group missing
    - an item with bids but no selection
    - a selection for an unknown item, or a supplier that did not quote it
    - lowest bid not selected and no justification
    """
    errors = []
    items_by_id = {item.id: item for item in rfp.items}
    bids = collect_bids(rfp)

    if not approval_group or not approval_group.strip():
        errors.append("Approval group is required")

    if not lowest_bid_selected and not (justification and justification.strip()):
        errors.append("Justification is required when the lowest bid is not selected")

    chosen: Dict[int, Tuple[VendorSelectionInput, RFPQuotation, RFPQuotationItem]] = {}
    for selection in selections:
        item = items_by_id.get(selection.rfp_item_id)
        if item is None:
            errors.append(f"Item {selection.rfp_item_id} is not part of RFP {rfp.rfp_number}")
            continue
        if selection.rfp_item_id in chosen:
            errors.append(f"'{item.item_name}' has more than one vendor selected")
            continue

        match = next(
            (bid for bid in bids.get(item.id, []) if bid[0].supplier_id == selection.selected_supplier_id),
            None
        )
        if match is None:
            errors.append(f"Supplier {selection.selected_supplier_id} did not quote '{item.item_name}'")
            continue
        chosen[item.id] = (selection, match[0], match[1])

    missing = [item.item_name for item in rfp.items if item.id in bids and item.id not in chosen]
    if missing:
        errors.append(f"No vendor selected for: {', '.join(missing)}")

    if not bids:
        errors.append("No quotations have been received for this RFP")

    if errors:
        raise ValidationError("Vendor selection is incomplete", errors)

    payload_items = []
    grand_total = Decimal("0")
    for item in rfp.items:
        if item.id not in chosen:
            continue
        selection, quotation, quote_item = chosen[item.id]
        lowest_price = min(bid[1].unit_price for bid in bids[item.id])
        line_total = quote_item.total_price or Decimal("0")
        grand_total += line_total

        payload_items.append({
            "rfp_item_id": item.id,
            "item_name": item.item_name,
            "quantity": float(quote_item.quantity),
            "selected_supplier_id": quotation.supplier_id,
            "selected_supplier_name": _supplier_name(quotation),
            "quotation_id": quotation.id,
            "quotation_number": quotation.quotation_number,
            "unit_price": float(quote_item.unit_price),
            "line_total": float(line_total),
            "lowest_unit_price": float(lowest_price),
            "is_lowest_bid": quote_item.unit_price == lowest_price,
            "bid_count": len(bids[item.id]),
            "remarks": selection.remarks
        })

    return {
        "rfp_id": rfp.id,
        "rfp_number": rfp.rfp_number,
        "approval_group": approval_group.strip(),
        "competitive_bidding": competitive_bidding,
        "lowest_bid_selected": lowest_bid_selected,
        "justification": justification,
        "items": payload_items,
        "selected_supplier_ids": sorted({entry["selected_supplier_id"] for entry in payload_items}),
        "grand_total": float(grand_total)
    }
