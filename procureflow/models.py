from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Date, Numeric, UniqueConstraint, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from procureflow.database import Base


# =============================================================================
# Directory & Catalog
# =============================================================================

class Supplier(Base):
    """
    Supplier directory.
    Unregistered vendors invited by e-mail get a provisional row
    (is_registered=False) so quotations always reference a supplier id.
    """
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    supplier_code = Column(String(30), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    contact_person = Column(String(200), nullable=True)
    email = Column(String(200), nullable=True, index=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    is_registered = Column(Boolean, default=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    invitations = relationship("RFPSupplier", back_populates="supplier")


class ItemCategory(Base):
    """
    Item categories. A row with parent_id set is a sub-category.
    """
    __tablename__ = "item_categories"

    id = Column(Integer, primary_key=True, index=True)
    parent_id = Column(Integer, ForeignKey("item_categories.id"), nullable=True)
    code = Column(String(20), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    parent = relationship("ItemCategory", remote_side=[id], backref="sub_categories")

    __table_args__ = (
        UniqueConstraint('parent_id', 'code', name='uq_item_category_code'),
    )


class ItemMaster(Base):
    """
    Item Master - the catalog purchase request lines are resolved against
    """
    __tablename__ = "item_master"

    id = Column(Integer, primary_key=True, index=True)

    # Identification
    item_code = Column(String(50), nullable=False, unique=True, index=True)
    display_name = Column(String(300), nullable=False, index=True)
    model_name = Column(String(300), nullable=True, index=True)
    make = Column(String(200), nullable=True)  # Manufacturer / brand
    description = Column(Text, nullable=True)

    # Classification
    category_id = Column(Integer, ForeignKey("item_categories.id"), nullable=True)
    sub_category_id = Column(Integer, ForeignKey("item_categories.id"), nullable=True)
    uom = Column(String(30), default="Piece")  # Unit of measure: Piece, Box, KG, etc.

    # Pricing
    reference_price = Column(Numeric(14, 2), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    category = relationship("ItemCategory", foreign_keys=[category_id])
    sub_category = relationship("ItemCategory", foreign_keys=[sub_category_id])


# =============================================================================
# Purchase Requests
# =============================================================================

class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"

    id = Column(Integer, primary_key=True, index=True)
    request_number = Column(String(30), nullable=False, unique=True, index=True)  # PR-2026-00001
    request_date = Column(Date, nullable=False)
    requested_by = Column(String(200), nullable=False)
    department = Column(String(200), nullable=True)
    project_name = Column(String(300), nullable=True)
    purchase_type = Column(String(50), nullable=True)
    remarks = Column(Text, nullable=True)

    # DRAFT, SUBMITTED, APPROVED, REJECTED, RFP_CREATED
    status = Column(String(20), default="DRAFT", index=True)

    created_by = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(200), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    rfp_id = Column(Integer, ForeignKey("rfps.id"), nullable=True)

    lines = relationship("PurchaseRequestLine", back_populates="purchase_request",
                         cascade="all, delete-orphan", order_by="PurchaseRequestLine.line_number")


class PurchaseRequestLine(Base):
    __tablename__ = "purchase_request_lines"

    id = Column(Integer, primary_key=True, index=True)
    purchase_request_id = Column(Integer, ForeignKey("purchase_requests.id", ondelete="CASCADE"), nullable=False)
    line_number = Column(Integer, nullable=False)

    # 0 = unresolved free-text line, otherwise item_master.id
    item_id = Column(Integer, default=0, nullable=False)
    category_id = Column(Integer, default=0)
    category_name = Column(String(100), nullable=True)
    sub_category_id = Column(Integer, default=0)
    sub_category_name = Column(String(100), nullable=True)
    model_name = Column(String(300), nullable=False)
    make = Column(String(200), nullable=True)
    uom_name = Column(String(30), nullable=True)
    description = Column(Text, nullable=True)

    quantity = Column(Numeric(14, 3), nullable=False)
    unit_price = Column(Numeric(14, 2), default=0)
    total_price = Column(Numeric(16, 2), default=0)

    purchase_request = relationship("PurchaseRequest", back_populates="lines")


# =============================================================================
# RFP (Request for Proposal)
# =============================================================================

class RFP(Base):
    """
    Request for Proposal.
    IN_REVIEW is never stored: it is derived from the presence of received quotations.
    """
    __tablename__ = "rfps"

    id = Column(Integer, primary_key=True, index=True)
    rfp_number = Column(String(30), nullable=False, unique=True, index=True)  # RFP-2026-00001
    request_date = Column(Date, nullable=False)
    closing_date = Column(Date, nullable=False)
    requested_by = Column(String(200), nullable=True)
    department = Column(String(200), nullable=True)
    payment_terms = Column(String(200), nullable=True)
    remarks = Column(Text, nullable=True)

    # DRAFT, CREATED, FLOATED, NEGOTIATION, APPROVED, REJECTED, CLOSED, CANCELLED
    status = Column(String(20), default="DRAFT", index=True)

    # Approval bookkeeping - NONE, PENDING, APPROVED, REJECTED
    approval_status = Column(String(20), default="NONE", index=True)
    approval_group = Column(String(100), nullable=True)
    competitive_bidding = Column(Boolean, nullable=True)
    lowest_bid_selected = Column(Boolean, nullable=True)
    selection_justification = Column(Text, nullable=True)
    approval_request = Column(Text, nullable=True)  # JSON payload of per-item selections
    approval_requested_at = Column(DateTime, nullable=True)
    approval_requested_by = Column(String(200), nullable=True)
    decision_remarks = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decided_by = Column(String(200), nullable=True)

    evaluated_at = Column(DateTime, nullable=True)
    floated_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    created_by = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    items = relationship("RFPItem", back_populates="rfp", cascade="all, delete-orphan",
                         order_by="RFPItem.line_number")
    suppliers = relationship("RFPSupplier", back_populates="rfp", cascade="all, delete-orphan",
                             order_by="RFPSupplier.id")
    quotations = relationship("RFPQuotation", back_populates="rfp", cascade="all, delete-orphan",
                              order_by="RFPQuotation.id")
    audit_trail = relationship("RFPAuditTrail", back_populates="rfp", cascade="all, delete-orphan")


class RFPItem(Base):
    __tablename__ = "rfp_items"

    id = Column(Integer, primary_key=True, index=True)
    rfp_id = Column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False)
    line_number = Column(Integer, nullable=False)
    item_name = Column(String(300), nullable=False)
    item_code = Column(String(50), nullable=True)
    quantity = Column(Numeric(14, 3), nullable=False)
    unit_of_measurement = Column(String(30), nullable=True)
    category = Column(String(100), nullable=True)
    sub_category = Column(String(100), nullable=True)
    indicative_price = Column(Numeric(14, 2), nullable=True)  # Ceiling guidance
    target_unit_price = Column(Numeric(14, 2), nullable=True)  # Negotiation goal
    grand_total = Column(Numeric(16, 2), nullable=True)
    specifications = Column(Text, nullable=True)
    remarks = Column(Text, nullable=True)
    pr_line_id = Column(Integer, ForeignKey("purchase_request_lines.id"), nullable=True)
    pr_number = Column(String(30), nullable=True)

    rfp = relationship("RFP", back_populates="items")


class RFPSupplier(Base):
    """Supplier invited to an RFP"""
    __tablename__ = "rfp_suppliers"

    id = Column(Integer, primary_key=True, index=True)
    rfp_id = Column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    supplier_name = Column(String(200), nullable=False)
    contact_person = Column(String(200), nullable=True)
    contact_email = Column(String(200), nullable=True)
    invitation_sent = Column(Boolean, default=True)
    invitation_sent_at = Column(DateTime, default=func.now())
    response_received = Column(Boolean, default=False)
    response_at = Column(DateTime, nullable=True)

    # INVITED, RESPONDED, SHORTLISTED, SELECTED, REJECTED, WITHDRAWN
    status = Column(String(20), default="INVITED")
    remarks = Column(Text, nullable=True)

    rfp = relationship("RFP", back_populates="suppliers")
    supplier = relationship("Supplier", back_populates="invitations")

    __table_args__ = (
        UniqueConstraint('rfp_id', 'supplier_id', name='uq_rfp_supplier'),
    )


# Quotations in these statuses are live bids: ranked by Evaluate, selectable for approval
RANKED_QUOTATION_STATUSES = ("SUBMITTED", "UNDER_EVALUATION", "NEGOTIATION", "SHORTLISTED", "SELECTED")


class RFPQuotation(Base):
    """
    A supplier's priced response to an RFP.
    Mutated in place on re-submission; never deleted.
    """
    __tablename__ = "rfp_quotations"

    id = Column(Integer, primary_key=True, index=True)
    rfp_id = Column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    quotation_number = Column(String(50), nullable=False)
    quotation_date = Column(Date, nullable=True)
    validity_date = Column(Date, nullable=True)
    payment_terms = Column(String(200), nullable=True)
    delivery_terms = Column(String(200), nullable=True)
    currency = Column(String(10), default="INR")

    subtotal = Column(Numeric(16, 2), default=0)
    tax_amount = Column(Numeric(16, 2), default=0)
    net_amount = Column(Numeric(16, 2), default=0)

    # DRAFT, SUBMITTED, UNDER_EVALUATION, NEGOTIATION, SHORTLISTED, SELECTED, REJECTED, WITHDRAWN
    status = Column(String(20), default="SUBMITTED", index=True)
    ranking = Column(Integer, nullable=True)
    negotiation_notes = Column(Text, nullable=True)
    negotiation_round = Column(Integer, default=0)
    remarks = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)

    submitted_at = Column(DateTime, nullable=True)
    last_submitted_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    rfp = relationship("RFP", back_populates="quotations")
    supplier = relationship("Supplier")
    items = relationship("RFPQuotationItem", back_populates="quotation", cascade="all, delete-orphan",
                         order_by="RFPQuotationItem.id")
    revisions = relationship("RFPQuotationRevision", back_populates="quotation", cascade="all, delete-orphan",
                             order_by="RFPQuotationRevision.round_number")

    __table_args__ = (
        UniqueConstraint('rfp_id', 'quotation_number', name='uq_rfp_quotation_number'),
        # At most one live quotation per supplier per RFP
        Index(
            'uq_rfp_supplier_active_quotation', 'rfp_id', 'supplier_id', unique=True,
            sqlite_where=text("status != 'WITHDRAWN'"),
            postgresql_where=text("status != 'WITHDRAWN'"),
        ),
    )


class RFPQuotationItem(Base):
    __tablename__ = "rfp_quotation_items"

    id = Column(Integer, primary_key=True, index=True)
    quotation_id = Column(Integer, ForeignKey("rfp_quotations.id", ondelete="CASCADE"), nullable=False)
    rfp_item_id = Column(Integer, ForeignKey("rfp_items.id"), nullable=False)
    item_name = Column(String(300), nullable=False)
    quantity = Column(Numeric(14, 3), nullable=False)
    unit_of_measurement = Column(String(30), nullable=True)
    unit_price = Column(Numeric(14, 2), nullable=False)
    tax_rate = Column(Numeric(6, 2), default=0)
    tax_amount = Column(Numeric(16, 2), default=0)
    total_price = Column(Numeric(16, 2), default=0)  # quantity x unit_price x (1 + tax_rate/100)
    rank = Column(Integer, nullable=True)  # 1 = L1
    delivery_time = Column(String(100), nullable=True)
    remarks = Column(Text, nullable=True)

    quotation = relationship("RFPQuotation", back_populates="items")
    rfp_item = relationship("RFPItem")


class RFPQuotationRevision(Base):
    """Price snapshot of every accepted submission of a quotation"""
    __tablename__ = "rfp_quotation_revisions"

    id = Column(Integer, primary_key=True, index=True)
    quotation_id = Column(Integer, ForeignKey("rfp_quotations.id", ondelete="CASCADE"), nullable=False)
    round_number = Column(Integer, nullable=False)  # 0 = initial submission
    prices = Column(Text, nullable=False)  # JSON: {rfp_item_id: unit_price}
    net_amount = Column(Numeric(16, 2), default=0)
    submitted_at = Column(DateTime, default=func.now())
    submitted_by = Column(String(200), nullable=True)

    quotation = relationship("RFPQuotation", back_populates="revisions")


class RFPAuditTrail(Base):
    __tablename__ = "rfp_audit_trail"

    id = Column(Integer, primary_key=True, index=True)
    rfp_id = Column(Integer, ForeignKey("rfps.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(50), nullable=False)  # created, floated, quotation_submitted, ...
    action_category = Column(String(20), default="rfp")  # rfp, item, supplier, quotation, status, approval
    action_by = Column(String(200), nullable=True)
    action_at = Column(DateTime, default=func.now())
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    details = Column(Text, nullable=True)  # JSON

    rfp = relationship("RFP", back_populates="audit_trail")
