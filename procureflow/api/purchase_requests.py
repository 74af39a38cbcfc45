from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, joinedload
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from procureflow.database import get_db
from procureflow.api.auth import get_current_actor
from procureflow.exceptions import NotFound, StateTransitionError, ValidationError
from procureflow.models import PurchaseRequest, PurchaseRequestLine
from procureflow.schemas import (
    PurchaseRequestCreate, PurchaseRequest as PRSchema, PurchaseRequestRejection,
    ImportRowInput, ResolveLinesRequest
)
from procureflow.services.batch_import import BatchImportEngine
from procureflow.services.catalog_resolver import CatalogResolver, build_catalog_search
from procureflow.services.line_item_sheet import XLSX_MEDIA_TYPE, build_line_item_template, parse_line_item_sheet
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def generate_pr_number(db: Session) -> str:
    """Generate next PR number: PR-YYYY-NNNNN"""
    year = datetime.now().year
    prefix = f"PR-{year}-"

    last_pr = db.query(PurchaseRequest).filter(
        PurchaseRequest.request_number.like(f"{prefix}%")
    ).order_by(PurchaseRequest.request_number.desc()).first()

    if last_pr:
        try:
            next_num = int(last_pr.request_number.replace(prefix, "")) + 1
        except ValueError:
            next_num = 1
    else:
        next_num = 1

    return f"{prefix}{next_num:05d}"


def line_total(quantity, unit_price) -> Decimal:
    total = Decimal(str(quantity)) * Decimal(str(unit_price or 0))
    return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def get_pr_or_404(db: Session, pr_id: int) -> PurchaseRequest:
    pr = db.query(PurchaseRequest).filter(
        PurchaseRequest.id == pr_id
    ).options(joinedload(PurchaseRequest.lines)).first()

    if not pr:
        raise NotFound(f"Purchase request {pr_id} not found")

    return pr


# ============================================================================
# Line-item Import
# ============================================================================

async def resolve_import_rows(db: Session, rows: List[ImportRowInput]) -> dict:
    """Resolve rows against the catalog and report progress per batch"""
    if not rows:
        raise ValidationError("No line items to import")

    progress = []

    def on_progress(completed: int, total: int):
        progress.append({"completed": completed, "total": total})

    engine = BatchImportEngine(CatalogResolver(build_catalog_search(db)))
    lines = await engine.run(rows, on_progress=on_progress)

    return {
        "lines": [line.model_dump() for line in lines],
        "total": len(lines),
        "matched": sum(1 for line in lines if line.item_id),
        "progress": progress
    }


@router.get("/import-template")
async def download_import_template():
    """Download the Excel template for bulk-loading line items"""
    output = build_line_item_template()
    return StreamingResponse(
        output,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=purchase_request_lines_template.xlsx"}
    )


@router.post("/import-lines")
async def import_lines(
    file: UploadFile = File(...),
    db: Session = Depends(get_db)
):
    """
    Parse an uploaded line-item workbook and resolve every row against the
    item master. Returns the resolved lines; nothing is saved.
    """
    if not file.filename or not file.filename.lower().endswith('.xlsx'):
        raise ValidationError("Invalid file format. Please upload an Excel (.xlsx) file.")

    content = await file.read()
    rows = parse_line_item_sheet(content)
    logger.info(f"Importing {len(rows)} line items from {file.filename}")
    return await resolve_import_rows(db, rows)


@router.post("/resolve-lines")
async def resolve_lines(
    data: ResolveLinesRequest,
    db: Session = Depends(get_db)
):
    """Resolve already-parsed spreadsheet rows against the item master"""
    return await resolve_import_rows(db, data.rows)


# ============================================================================
# Purchase Request CRUD
# ============================================================================

@router.get("", response_model=List[PRSchema])
async def list_purchase_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db)
):
    """List purchase requests"""
    query = db.query(PurchaseRequest).options(joinedload(PurchaseRequest.lines))

    if status_filter:
        query = query.filter(PurchaseRequest.status == status_filter.upper())
    if search:
        query = query.filter(
            (PurchaseRequest.request_number.ilike(f"%{search}%")) |
            (PurchaseRequest.project_name.ilike(f"%{search}%"))
        )

    return query.order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc()).offset(offset).limit(limit).all()


@router.post("", response_model=PRSchema, status_code=status.HTTP_201_CREATED)
async def create_purchase_request(
    pr_data: PurchaseRequestCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Create a new purchase request in DRAFT"""
    pr = PurchaseRequest(
        request_number=generate_pr_number(db),
        request_date=pr_data.request_date or date.today(),
        requested_by=pr_data.requested_by,
        department=pr_data.department,
        project_name=pr_data.project_name,
        purchase_type=pr_data.purchase_type,
        remarks=pr_data.remarks,
        status="DRAFT",
        created_by=actor
    )

    for idx, line_data in enumerate(pr_data.lines, 1):
        pr.lines.append(PurchaseRequestLine(
            line_number=idx,
            item_id=line_data.item_id,
            category_id=line_data.category_id,
            category_name=line_data.category_name,
            sub_category_id=line_data.sub_category_id,
            sub_category_name=line_data.sub_category_name,
            model_name=line_data.model_name,
            make=line_data.make,
            uom_name=line_data.uom_name,
            description=line_data.description,
            quantity=line_data.quantity,
            unit_price=line_data.unit_price,
            total_price=line_total(line_data.quantity, line_data.unit_price)
        ))

    db.add(pr)
    db.commit()
    db.refresh(pr)

    logger.info(f"Purchase request created: {pr.request_number} with {len(pr.lines)} lines")
    return pr


@router.get("/{pr_id}", response_model=PRSchema)
async def get_purchase_request(pr_id: int, db: Session = Depends(get_db)):
    """Get a purchase request by ID"""
    return get_pr_or_404(db, pr_id)


@router.post("/{pr_id}/submit", response_model=PRSchema)
async def submit_purchase_request(pr_id: int, db: Session = Depends(get_db)):
    """Submit a purchase request for approval"""
    pr = get_pr_or_404(db, pr_id)

    if pr.status != "DRAFT":
        raise StateTransitionError("Can only submit draft purchase requests")
    if not pr.lines:
        raise ValidationError("Cannot submit a purchase request without line items")

    pr.status = "SUBMITTED"
    pr.submitted_at = datetime.utcnow()

    db.commit()
    db.refresh(pr)

    logger.info(f"Purchase request submitted: {pr.request_number}")
    return pr


@router.post("/{pr_id}/approve", response_model=PRSchema)
async def approve_purchase_request(
    pr_id: int,
    db: Session = Depends(get_db),
    actor: str = Depends(get_current_actor)
):
    """Approve a purchase request"""
    pr = get_pr_or_404(db, pr_id)

    if pr.status != "SUBMITTED":
        raise StateTransitionError("Can only approve submitted purchase requests")

    pr.status = "APPROVED"
    pr.approved_at = datetime.utcnow()
    pr.approved_by = actor

    db.commit()
    db.refresh(pr)

    logger.info(f"Purchase request approved: {pr.request_number}")
    return pr


@router.post("/{pr_id}/reject", response_model=PRSchema)
async def reject_purchase_request(
    pr_id: int,
    rejection_data: PurchaseRequestRejection,
    db: Session = Depends(get_db)
):
    """Reject a purchase request"""
    pr = get_pr_or_404(db, pr_id)

    if pr.status != "SUBMITTED":
        raise StateTransitionError("Can only reject submitted purchase requests")

    pr.status = "REJECTED"
    pr.rejected_at = datetime.utcnow()
    pr.rejection_reason = rejection_data.reason

    db.commit()
    db.refresh(pr)

    logger.info(f"Purchase request rejected: {pr.request_number}")
    return pr
