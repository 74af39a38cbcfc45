from datetime import datetime
from decimal import Decimal

import pytest

from procureflow.exceptions import NotFound, PriceRatchetViolation, StateTransitionError, ValidationError
from procureflow.schemas import QuotationItemInput, QuotationResubmit, QuotationSubmit
from procureflow.services import quotation_service, rfp_service
from procureflow.services.quotation_service import compute_line_totals, normalize_item_name

ACTOR = "Priya Buyer"


def resubmit(db, rfp, quotation, prices, tax_rate=Decimal("18"), expected_version=None):
    data = QuotationResubmit(
        items=[
            QuotationItemInput(item_name=name, unit_price=Decimal(str(price)), tax_rate=tax_rate)
            for name, price in prices.items()
        ],
        expected_version=expected_version
    )
    return quotation_service.resubmit_quotation(db, rfp, quotation, data, ACTOR)


def item_prices(quotation):
    return {qi.item_name: qi.unit_price for qi in quotation.items}


class TestLineTotals:
    def test_total_includes_tax(self):
        subtotal, tax, total = compute_line_totals(Decimal("10"), Decimal("45000"), Decimal("18"))
        assert subtotal == Decimal("450000.00")
        assert tax == Decimal("81000.00")
        assert total == Decimal("531000.00")

    def test_rounds_half_up(self):
        subtotal, tax, total = compute_line_totals(Decimal("1"), Decimal("0.10"), Decimal("5"))
        assert subtotal == Decimal("0.10")
        assert total == Decimal("0.11")
        assert tax == Decimal("0.01")

    def test_item_name_normalization(self):
        assert normalize_item_name("  Wireless   MOUSE ") == "wireless mouse"
        assert normalize_item_name(None) == ""


class TestSubmit:
    def test_submit_computes_totals(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})

        assert quotation.status == "SUBMITTED"
        assert quotation.version == 1
        assert quotation.subtotal == Decimal("450000.00")
        assert quotation.tax_amount == Decimal("81000.00")
        assert quotation.net_amount == Decimal("531000.00")
        assert quotation.quotation_number == f"Q-{floated_rfp.rfp_number}-001"
        assert [r.round_number for r in quotation.revisions] == [0]

    def test_quantity_defaults_to_rfp_quantity(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Wireless Mouse": 800}, tax_rate=Decimal("0"))

        assert quotation.items[0].quantity == Decimal("20")
        assert quotation.net_amount == Decimal("16000.00")

    def test_submission_marks_invitation_and_review_state(self, db, floated_rfp, suppliers, submit_quote):
        assert rfp_service.effective_status(floated_rfp) == "FLOATED"

        submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})

        invitation = next(s for s in floated_rfp.suppliers if s.supplier_id == suppliers[0].id)
        assert invitation.status == "RESPONDED"
        assert invitation.response_received is True
        assert floated_rfp.status == "FLOATED"
        assert rfp_service.effective_status(floated_rfp) == "IN_REVIEW"

    def test_item_matched_by_name_ignores_case_and_spacing(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"  wireless   MOUSE ": 850})

        mouse = next(i for i in floated_rfp.items if i.item_name == "Wireless Mouse")
        assert quotation.items[0].rfp_item_id == mouse.id
        assert quotation.items[0].item_name == "Wireless Mouse"

    def test_item_matched_by_id(self, db, floated_rfp, suppliers):
        laptop = next(i for i in floated_rfp.items if i.item_name == "Laptop")
        data = QuotationSubmit(
            supplier_id=suppliers[0].id,
            items=[QuotationItemInput(rfp_item_id=laptop.id, unit_price=Decimal("45000"))]
        )
        quotation = quotation_service.submit_quotation(db, floated_rfp, data, ACTOR)

        assert quotation.items[0].rfp_item_id == laptop.id

    def test_invalid_lines_are_reported_together(self, db, floated_rfp, suppliers, submit_quote):
        with pytest.raises(ValidationError) as exc_info:
            submit_quote(floated_rfp, suppliers[0], {"Projector": 30000, "Laptop": -5})

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any("Projector" in e for e in errors)
        assert any("cannot be negative" in e for e in errors)
        assert floated_rfp.quotations == []

    def test_same_item_twice_is_rejected(self, db, floated_rfp, suppliers):
        data = QuotationSubmit(
            supplier_id=suppliers[0].id,
            items=[
                QuotationItemInput(item_name="Laptop", unit_price=Decimal("45000")),
                QuotationItemInput(item_name="laptop", unit_price=Decimal("44000")),
            ]
        )
        with pytest.raises(ValidationError) as exc_info:
            quotation_service.submit_quotation(db, floated_rfp, data, ACTOR)

        assert any("more than once" in e for e in exc_info.value.errors)

    def test_uninvited_supplier_cannot_submit(self, db, floated_rfp, suppliers, submit_quote):
        with pytest.raises(StateTransitionError):
            submit_quote(floated_rfp, suppliers[2], {"Laptop": 45000})

    def test_one_live_quotation_per_supplier(self, db, floated_rfp, suppliers, submit_quote):
        submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})

        with pytest.raises(StateTransitionError):
            submit_quote(floated_rfp, suppliers[0], {"Laptop": 44000})

    def test_rfp_not_floated_rejects_quotations(self, db, make_rfp, suppliers, submit_quote):
        rfp = make_rfp()

        with pytest.raises(StateTransitionError):
            submit_quote(rfp, suppliers[0], {"Laptop": 45000})

    def test_duplicate_quotation_number(self, db, floated_rfp, suppliers, submit_quote):
        submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000}, quotation_number="SQ-100")

        with pytest.raises(ValidationError):
            submit_quote(floated_rfp, suppliers[1], {"Laptop": 44000}, quotation_number="SQ-100")


class TestWithdraw:
    def test_withdraw_frees_supplier_to_submit_again(self, db, floated_rfp, suppliers, submit_quote):
        first = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.withdraw_quotation(db, first, ACTOR, reason="Wrong model quoted")
        db.commit()

        assert first.status == "WITHDRAWN"
        assert rfp_service.effective_status(floated_rfp) == "FLOATED"

        second = submit_quote(floated_rfp, suppliers[0], {"Laptop": 44500})

        assert second.status == "SUBMITTED"
        assert second.quotation_number != first.quotation_number
        assert sorted(q.status for q in floated_rfp.quotations) == ["SUBMITTED", "WITHDRAWN"]

    def test_withdrawn_quotation_cannot_be_withdrawn_again(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.withdraw_quotation(db, quotation, ACTOR)

        with pytest.raises(StateTransitionError):
            quotation_service.withdraw_quotation(db, quotation, ACTOR)


class TestNegotiation:
    def test_negotiate_moves_quotation_and_rfp(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})

        quotation_service.negotiate_quotation(db, quotation, ACTOR, notes="Target is 44k")
        db.commit()

        assert quotation.status == "NEGOTIATION"
        assert quotation.negotiation_round == 1
        assert quotation.negotiation_notes == "[Round 1] Target is 44k"
        assert quotation.version == 2
        assert floated_rfp.status == "NEGOTIATION"

    def test_only_submitted_quotations_can_be_negotiated(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)

        with pytest.raises(StateTransitionError):
            quotation_service.negotiate_quotation(db, quotation, ACTOR)

    def test_price_ratchet(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)
        db.commit()

        with pytest.raises(PriceRatchetViolation) as exc_info:
            resubmit(db, floated_rfp, quotation, {"Laptop": 46000})

        violation = exc_info.value
        assert violation.item_name == "Laptop"
        assert violation.previous_price == Decimal("45000")
        assert violation.offered_price == Decimal("46000")
        assert item_prices(quotation) == {"Laptop": Decimal("45000")}
        assert quotation.version == 2
        assert len(quotation.revisions) == 1

        resubmit(db, floated_rfp, quotation, {"Laptop": 44000})
        db.commit()

        assert item_prices(quotation) == {"Laptop": Decimal("44000")}
        assert quotation.net_amount == Decimal("519200.00")
        assert quotation.status == "NEGOTIATION"
        assert quotation.version == 3
        assert [r.round_number for r in quotation.revisions] == [0, 1]

    def test_dropped_item_cannot_come_back_higher(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000, "Wireless Mouse": 800})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)
        resubmit(db, floated_rfp, quotation, {"Laptop": 45000})
        db.commit()

        with pytest.raises(PriceRatchetViolation) as exc_info:
            resubmit(db, floated_rfp, quotation, {"Laptop": 45000, "Wireless Mouse": 5000})

        assert exc_info.value.item_name == "Wireless Mouse"
        assert exc_info.value.previous_price == Decimal("800")
        assert item_prices(quotation) == {"Laptop": Decimal("45000")}

        resubmit(db, floated_rfp, quotation, {"Laptop": 45000, "Wireless Mouse": 800})
        assert item_prices(quotation)["Wireless Mouse"] == Decimal("800")

    def test_quantity_is_fixed_during_negotiation(self, db, floated_rfp, suppliers):
        laptop = next(item for item in floated_rfp.items if item.item_name == "Laptop")
        quotation = quotation_service.submit_quotation(db, floated_rfp, QuotationSubmit(
            supplier_id=suppliers[0].id,
            items=[QuotationItemInput(rfp_item_id=laptop.id, quantity=Decimal("8"), unit_price=Decimal("45000"))]
        ), ACTOR)
        quotation_service.negotiate_quotation(db, quotation, ACTOR)
        db.commit()

        with pytest.raises(ValidationError) as exc_info:
            quotation_service.resubmit_quotation(db, floated_rfp, quotation, QuotationResubmit(
                items=[QuotationItemInput(rfp_item_id=laptop.id, quantity=Decimal("12"), unit_price=Decimal("45000"))]
            ), ACTOR)

        assert exc_info.value.errors == ["Quantity of 'Laptop' is fixed at 8 during negotiation"]
        assert quotation.net_amount == Decimal("360000.00")

        resubmit(db, floated_rfp, quotation, {"Laptop": 44000}, tax_rate=Decimal("0"))

        assert quotation.items[0].quantity == Decimal("8")
        assert quotation.net_amount == Decimal("352000.00")

    def test_one_increase_rejects_the_whole_resubmission(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000, "Wireless Mouse": 800})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)

        with pytest.raises(PriceRatchetViolation):
            resubmit(db, floated_rfp, quotation, {"Laptop": 43000, "Wireless Mouse": 801})

        assert item_prices(quotation) == {"Laptop": Decimal("45000"), "Wireless Mouse": Decimal("800")}

    def test_equal_price_is_accepted(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)

        resubmit(db, floated_rfp, quotation, {"Laptop": 45000}, tax_rate=Decimal("12"))

        assert quotation.net_amount == Decimal("504000.00")

    def test_resubmit_requires_negotiation(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})

        with pytest.raises(StateTransitionError):
            resubmit(db, floated_rfp, quotation, {"Laptop": 44000})

    def test_stale_version_is_rejected(self, db, floated_rfp, suppliers, submit_quote):
        quotation = submit_quote(floated_rfp, suppliers[0], {"Laptop": 45000})
        quotation_service.negotiate_quotation(db, quotation, ACTOR, expected_version=1)

        with pytest.raises(StateTransitionError):
            resubmit(db, floated_rfp, quotation, {"Laptop": 44000}, expected_version=1)

        resubmit(db, floated_rfp, quotation, {"Laptop": 44000}, expected_version=2)
        assert quotation.version == 3

    def test_quotation_from_another_rfp(self, db, make_rfp, floated_rfp, suppliers, submit_quote):
        other = make_rfp(float_to=suppliers[:1])
        quotation = submit_quote(other, suppliers[0], {"Laptop": 45000})
        quotation_service.negotiate_quotation(db, quotation, ACTOR)

        with pytest.raises(NotFound):
            resubmit(db, floated_rfp, quotation, {"Laptop": 44000})


class TestRanking:
    @pytest.fixture
    def quoted_rfp(self, db, make_rfp, suppliers, submit_quote):
        rfp = make_rfp(float_to=suppliers)
        first = submit_quote(rfp, suppliers[0], {"Laptop": 45000, "Wireless Mouse": 800})
        second = submit_quote(rfp, suppliers[1], {"Laptop": 44000, "Wireless Mouse": 800})
        third = submit_quote(rfp, suppliers[2], {"Laptop": 47000, "Wireless Mouse": 750})
        first.submitted_at = datetime(2026, 3, 2, 10, 0)
        second.submitted_at = datetime(2026, 3, 2, 9, 0)
        third.submitted_at = datetime(2026, 3, 2, 10, 30)
        db.commit()
        return rfp

    @staticmethod
    def ranks(rfp):
        return {
            (q.supplier_id, qi.item_name): qi.rank
            for q in rfp.quotations for qi in q.items
        }

    def test_item_ranks_break_ties_by_submission_time(self, db, quoted_rfp, suppliers):
        rfp_service.evaluate_rfp(db, quoted_rfp, ACTOR)
        a, b, c = (s.id for s in suppliers)

        ranks = self.ranks(quoted_rfp)
        assert ranks[(b, "Laptop")] == 1
        assert ranks[(a, "Laptop")] == 2
        assert ranks[(c, "Laptop")] == 3
        assert ranks[(c, "Wireless Mouse")] == 1
        assert ranks[(b, "Wireless Mouse")] == 2
        assert ranks[(a, "Wireless Mouse")] == 3

        ranking = {q.supplier_id: q.ranking for q in quoted_rfp.quotations}
        assert ranking == {b: 1, a: 2, c: 3}
        assert quoted_rfp.evaluated_at is not None

    def test_evaluation_is_idempotent(self, db, quoted_rfp):
        rfp_service.evaluate_rfp(db, quoted_rfp, ACTOR)
        first = self.ranks(quoted_rfp)

        rfp_service.evaluate_rfp(db, quoted_rfp, ACTOR)

        assert self.ranks(quoted_rfp) == first

    def test_withdrawn_quotations_are_not_ranked(self, db, quoted_rfp, suppliers):
        rfp_service.evaluate_rfp(db, quoted_rfp, ACTOR)
        withdrawn = next(q for q in quoted_rfp.quotations if q.supplier_id == suppliers[2].id)
        quotation_service.withdraw_quotation(db, withdrawn, ACTOR)

        rfp_service.evaluate_rfp(db, quoted_rfp, ACTOR)

        assert withdrawn.ranking is None
        assert all(qi.rank is None for qi in withdrawn.items)
        ranks = self.ranks(quoted_rfp)
        assert ranks[(suppliers[1].id, "Wireless Mouse")] == 1
        assert ranks[(suppliers[0].id, "Wireless Mouse")] == 2

    def test_evaluate_needs_quotations(self, db, floated_rfp):
        with pytest.raises(StateTransitionError):
            rfp_service.evaluate_rfp(db, floated_rfp, ACTOR)
