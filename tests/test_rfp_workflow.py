import json
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from procureflow.exceptions import NotFound, StateTransitionError, ValidationError
from procureflow.models import PurchaseRequest, PurchaseRequestLine, RFPAuditTrail, Supplier
from procureflow.schemas import (
    RFPCreate, RFPExtend, RFPFloat, RFPFromPurchaseRequests, RFPItemCorrection, RFPItemCreate,
    RFPUpdate, UnregisteredVendor
)
from procureflow.services import rfp_service
from procureflow.services.rfp_service import RFP_STATUS_TRANSITIONS, TERMINAL_STATUSES, can_transition_status

ACTOR = "Priya Buyer"


def audit_actions(db, rfp):
    return [
        entry.action for entry in
        db.query(RFPAuditTrail).filter(RFPAuditTrail.rfp_id == rfp.id).order_by(RFPAuditTrail.id)
    ]


class TestStatusTable:
    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert RFP_STATUS_TRANSITIONS[status] == []

    def test_every_open_status_can_be_cancelled(self):
        for status, targets in RFP_STATUS_TRANSITIONS.items():
            if status not in TERMINAL_STATUSES:
                assert "CANCELLED" in targets

    @pytest.mark.parametrize("current,new", [
        ("DRAFT", "FLOATED"),
        ("CREATED", "APPROVED"),
        ("FLOATED", "CLOSED"),
        ("APPROVED", "NEGOTIATION"),
        ("CLOSED", "CANCELLED"),
        ("REJECTED", "REJECTED"),
    ])
    def test_invalid_edges(self, current, new):
        assert can_transition_status(current, new) is False

    def test_in_review_is_not_stored(self):
        assert "IN_REVIEW" not in RFP_STATUS_TRANSITIONS
        assert all("IN_REVIEW" not in targets for targets in RFP_STATUS_TRANSITIONS.values())

    def test_transition_outside_table_raises(self, db, make_rfp):
        rfp = make_rfp()

        with pytest.raises(StateTransitionError):
            rfp_service.transition_rfp(db, rfp, "FLOATED", ACTOR)
        assert rfp.status == "DRAFT"


class TestCreateAndUpdate:
    def test_create_assigns_sequential_numbers(self, db, make_rfp):
        first = make_rfp()
        second = make_rfp()
        year = datetime.now().year

        assert first.rfp_number == f"RFP-{year}-00001"
        assert second.rfp_number == f"RFP-{year}-00002"
        assert first.status == "DRAFT"
        assert first.approval_status == "NONE"
        assert audit_actions(db, first) == ["created"]

    def test_item_grand_total_prefers_target_price(self, db, make_rfp):
        rfp = make_rfp()
        totals = {item.item_name: item.grand_total for item in rfp.items}

        assert totals["Laptop"] == Decimal("460000.00")
        assert totals["Wireless Mouse"] == Decimal("18000.00")

    def test_closing_date_before_request_date(self, db, make_rfp):
        with pytest.raises(ValidationError):
            make_rfp(request_date=date.today(), closing_date=date.today() - timedelta(days=1))

    def test_duplicate_rfp_number(self, db, make_rfp):
        make_rfp(rfp_number="RFP-MANUAL-1")

        with pytest.raises(ValidationError):
            make_rfp(rfp_number="RFP-MANUAL-1")

    def test_submit_requires_items(self, db, make_rfp):
        rfp = make_rfp(items=[])

        with pytest.raises(ValidationError):
            rfp_service.submit_rfp(db, rfp, ACTOR)

    def test_draft_items_can_be_replaced(self, db, make_rfp):
        rfp = make_rfp()
        data = RFPUpdate(items=[RFPItemCreate(item_name="Docking Station", quantity=5)])

        rfp_service.update_rfp(db, rfp, data, ACTOR)
        db.commit()

        assert [item.item_name for item in rfp.items] == ["Docking Station"]
        assert audit_actions(db, rfp)[-1] == "updated"

    def test_created_rfp_allows_header_changes_only(self, db, make_rfp, closing_date):
        rfp = make_rfp()
        rfp_service.submit_rfp(db, rfp, ACTOR)

        rfp_service.update_rfp(db, rfp, RFPUpdate(payment_terms="Net 45"), ACTOR)
        assert rfp.payment_terms == "Net 45"

        with pytest.raises(StateTransitionError):
            rfp_service.update_rfp(db, rfp, RFPUpdate(items=[RFPItemCreate(item_name="Dock", quantity=1)]), ACTOR)

    def test_closing_date_cannot_be_cleared(self, db, make_rfp):
        rfp = make_rfp()

        with pytest.raises(ValidationError):
            rfp_service.update_rfp(db, rfp, RFPUpdate(closing_date=None), ACTOR)

    def test_floated_rfp_cannot_be_updated(self, db, floated_rfp):
        with pytest.raises(StateTransitionError):
            rfp_service.update_rfp(db, floated_rfp, RFPUpdate(remarks="late change"), ACTOR)


class TestFloat:
    def test_float_invites_suppliers(self, db, floated_rfp, suppliers):
        assert floated_rfp.status == "FLOATED"
        assert floated_rfp.floated_at is not None
        assert {s.supplier_id for s in floated_rfp.suppliers} == {suppliers[0].id, suppliers[1].id}
        assert all(s.status == "INVITED" for s in floated_rfp.suppliers)
        assert audit_actions(db, floated_rfp).count("supplier_invited") == 2

    def test_float_without_recipients(self, db, make_rfp):
        rfp = make_rfp()
        rfp_service.submit_rfp(db, rfp, ACTOR)

        with pytest.raises(ValidationError):
            rfp_service.float_rfp(db, rfp, RFPFloat(), ACTOR)
        assert rfp.status == "CREATED"

    def test_float_requires_closing_date_after_today(self, db, make_rfp, suppliers):
        rfp = make_rfp(closing_date=date.today())
        rfp_service.submit_rfp(db, rfp, ACTOR)

        with pytest.raises(ValidationError):
            rfp_service.float_rfp(db, rfp, RFPFloat(supplier_ids=[suppliers[0].id]), ACTOR)

    def test_draft_cannot_be_floated(self, db, make_rfp, suppliers):
        rfp = make_rfp()

        with pytest.raises(StateTransitionError):
            rfp_service.float_rfp(db, rfp, RFPFloat(supplier_ids=[suppliers[0].id]), ACTOR)

    def test_unknown_supplier(self, db, make_rfp):
        rfp = make_rfp()
        rfp_service.submit_rfp(db, rfp, ACTOR)

        with pytest.raises(NotFound):
            rfp_service.float_rfp(db, rfp, RFPFloat(supplier_ids=[9999]), ACTOR)

    def test_inactive_supplier(self, db, make_rfp, suppliers):
        suppliers[2].is_active = False
        rfp = make_rfp()
        rfp_service.submit_rfp(db, rfp, ACTOR)

        with pytest.raises(ValidationError):
            rfp_service.float_rfp(db, rfp, RFPFloat(supplier_ids=[suppliers[2].id]), ACTOR)

    def test_unregistered_vendor_is_reused_by_email(self, db, make_rfp):
        first = make_rfp()
        rfp_service.submit_rfp(db, first, ACTOR)
        rfp_service.float_rfp(db, first, RFPFloat(unregistered_vendors=[
            UnregisteredVendor(email="Quotes@Vendor.example.com", name="Vendor One")
        ]), ACTOR)
        db.commit()

        second = make_rfp()
        rfp_service.submit_rfp(db, second, ACTOR)
        rfp_service.float_rfp(db, second, RFPFloat(unregistered_vendors=[
            UnregisteredVendor(email="quotes@vendor.example.com")
        ]), ACTOR)
        db.commit()

        provisional = db.query(Supplier).filter(Supplier.is_registered == False).all()
        assert len(provisional) == 1
        assert first.suppliers[0].supplier_id == second.suppliers[0].supplier_id == provisional[0].id

    def test_add_suppliers_skips_already_invited(self, db, floated_rfp, suppliers):
        rfp_service.add_suppliers(db, floated_rfp, RFPFloat(supplier_ids=[s.id for s in suppliers]), ACTOR)
        db.commit()

        assert sorted(s.supplier_id for s in floated_rfp.suppliers) == sorted(s.id for s in suppliers)

    def test_add_suppliers_requires_floated(self, db, make_rfp, suppliers):
        rfp = make_rfp()

        with pytest.raises(StateTransitionError):
            rfp_service.add_suppliers(db, rfp, RFPFloat(supplier_ids=[suppliers[0].id]), ACTOR)


class TestExtendAndCorrect:
    def test_extend_closing_date(self, db, floated_rfp, closing_date):
        new_date = closing_date + timedelta(days=7)

        rfp_service.extend_closing_date(db, floated_rfp, RFPExtend(new_closing_date=new_date, reason="Holidays"), ACTOR)
        db.commit()

        assert floated_rfp.closing_date == new_date
        entry = db.query(RFPAuditTrail).filter(RFPAuditTrail.action == "closing_date_extended").one()
        assert entry.old_value == closing_date.isoformat()
        assert json.loads(entry.details) == {"reason": "Holidays"}

    @pytest.mark.parametrize("offset", [0, -1])
    def test_extend_must_move_later(self, db, floated_rfp, closing_date, offset):
        with pytest.raises(ValidationError):
            rfp_service.extend_closing_date(
                db, floated_rfp, RFPExtend(new_closing_date=closing_date + timedelta(days=offset)), ACTOR
            )

    def test_correct_item_is_audited_with_reason(self, db, floated_rfp):
        laptop = next(i for i in floated_rfp.items if i.item_name == "Laptop")
        data = RFPItemCorrection(specifications="16GB RAM, 512GB SSD", quantity=12, reason="Spec from IT")

        rfp_service.correct_rfp_item(db, floated_rfp, laptop.id, data, ACTOR)
        db.commit()

        assert laptop.quantity == Decimal("12")
        assert laptop.grand_total == Decimal("552000.00")
        entry = db.query(RFPAuditTrail).filter(RFPAuditTrail.action == "item_corrected").one()
        details = json.loads(entry.details)
        assert details["reason"] == "Spec from IT"

    def test_quoted_quantity_cannot_change(self, db, floated_rfp, suppliers, submit_quote):
        submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        laptop = next(i for i in floated_rfp.items if i.item_name == "Laptop")

        with pytest.raises(ValidationError):
            rfp_service.correct_rfp_item(
                db, floated_rfp, laptop.id, RFPItemCorrection(quantity=8, reason="Budget cut"), ACTOR
            )

    def test_correct_unknown_item(self, db, floated_rfp):
        with pytest.raises(NotFound):
            rfp_service.correct_rfp_item(db, floated_rfp, 9999, RFPItemCorrection(reason="typo"), ACTOR)


class TestDeleteCancelClose:
    def test_delete_draft(self, db, make_rfp):
        rfp = make_rfp()

        rfp_service.delete_rfp(db, rfp, ACTOR)
        db.commit()

        with pytest.raises(NotFound):
            rfp_service.get_rfp(db, rfp.id)

    def test_floated_rfp_cannot_be_deleted(self, db, floated_rfp):
        with pytest.raises(StateTransitionError):
            rfp_service.delete_rfp(db, floated_rfp, ACTOR)

    def test_cancel_requires_reason(self, db, floated_rfp):
        with pytest.raises(ValidationError):
            rfp_service.cancel_rfp(db, floated_rfp, "  ", ACTOR)

    def test_cancelled_rfp_is_terminal(self, db, floated_rfp, closing_date):
        rfp_service.cancel_rfp(db, floated_rfp, "Budget withdrawn", ACTOR)

        assert floated_rfp.status == "CANCELLED"
        assert floated_rfp.cancellation_reason == "Budget withdrawn"
        with pytest.raises(StateTransitionError):
            rfp_service.cancel_rfp(db, floated_rfp, "again", ACTOR)
        with pytest.raises(StateTransitionError):
            rfp_service.extend_closing_date(
                db, floated_rfp, RFPExtend(new_closing_date=closing_date + timedelta(days=1)), ACTOR
            )

    def test_close_requires_approval(self, db, floated_rfp):
        with pytest.raises(StateTransitionError):
            rfp_service.close_rfp(db, floated_rfp, ACTOR)


class TestFromPurchaseRequests:
    @pytest.fixture
    def purchase_requests(self, db, catalog):
        approved = PurchaseRequest(
            request_number="PR-2026-00001", request_date=date.today(), requested_by="Anil Kumar",
            department="IT", status="APPROVED"
        )
        approved.lines = [
            PurchaseRequestLine(line_number=1, item_id=catalog[0].id, model_name="Latitude 5440", uom_name="Piece",
                                quantity=Decimal("10"), unit_price=Decimal("45000"), total_price=Decimal("450000")),
            PurchaseRequestLine(line_number=2, item_id=0, model_name="USB-C Dock", quantity=Decimal("10"),
                                unit_price=Decimal("0"), total_price=Decimal("0")),
        ]
        draft = PurchaseRequest(
            request_number="PR-2026-00002", request_date=date.today(), requested_by="Anil Kumar", status="DRAFT"
        )
        draft.lines = [PurchaseRequestLine(line_number=1, item_id=0, model_name="Stapler", quantity=Decimal("2"))]
        db.add_all([approved, draft])
        db.commit()
        return approved, draft

    def test_lines_become_items(self, db, purchase_requests, closing_date):
        approved, _ = purchase_requests
        rfp = rfp_service.create_rfp_from_purchase_requests(
            db, RFPFromPurchaseRequests(purchase_request_ids=[approved.id], closing_date=closing_date), ACTOR
        )
        db.commit()

        assert rfp.status == "DRAFT"
        assert rfp.department == "IT"
        assert [item.item_name for item in rfp.items] == ["Latitude 5440", "USB-C Dock"]
        laptop, dock = rfp.items
        assert laptop.item_code == "ITM-0001"
        assert laptop.target_unit_price == Decimal("45000")
        assert laptop.pr_number == "PR-2026-00001"
        assert dock.target_unit_price is None
        assert approved.status == "RFP_CREATED"
        assert approved.rfp_id == rfp.id

    def test_line_selection(self, db, purchase_requests, closing_date):
        approved, _ = purchase_requests
        data = RFPFromPurchaseRequests(
            purchase_request_ids=[approved.id], line_ids=[approved.lines[1].id], closing_date=closing_date
        )

        rfp = rfp_service.create_rfp_from_purchase_requests(db, data, ACTOR)

        assert [item.item_name for item in rfp.items] == ["USB-C Dock"]

    def test_only_approved_requests(self, db, purchase_requests, closing_date):
        approved, draft = purchase_requests
        data = RFPFromPurchaseRequests(
            purchase_request_ids=[approved.id, draft.id], line_ids=[424242], closing_date=closing_date
        )

        with pytest.raises(ValidationError) as exc_info:
            rfp_service.create_rfp_from_purchase_requests(db, data, ACTOR)

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any("PR-2026-00002" in e for e in errors)
        assert any("424242" in e for e in errors)

    def test_missing_request(self, db, closing_date):
        with pytest.raises(NotFound):
            rfp_service.create_rfp_from_purchase_requests(
                db, RFPFromPurchaseRequests(purchase_request_ids=[77], closing_date=closing_date), ACTOR
            )

    def test_delete_releases_requests(self, db, purchase_requests, closing_date):
        approved, _ = purchase_requests
        rfp = rfp_service.create_rfp_from_purchase_requests(
            db, RFPFromPurchaseRequests(purchase_request_ids=[approved.id], closing_date=closing_date), ACTOR
        )
        db.commit()

        rfp_service.delete_rfp(db, rfp, ACTOR)
        db.commit()

        assert approved.status == "APPROVED"
        assert approved.rfp_id is None


class TestTimeline:
    def test_newest_first(self, db, floated_rfp):
        entries, total = rfp_service.get_timeline(db, floated_rfp.id)

        assert total == len(entries)
        assert entries[-1].action == "created"
        assert entries[0].action == "status_changed"
        assert entries[0].new_value == "FLOATED"

    def test_paging(self, db, floated_rfp):
        entries, total = rfp_service.get_timeline(db, floated_rfp.id, page=2, size=2)

        assert total > 2
        assert len(entries) == min(2, total - 2)

    def test_entry_format(self, db, floated_rfp):
        entries, _ = rfp_service.get_timeline(db, floated_rfp.id)
        formatted = rfp_service.format_timeline_entry(entries[-1])

        assert formatted["action_title"] == "RFP Created"
        assert formatted["action_by"] == ACTOR
