from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from procureflow.database import get_db
from procureflow.exceptions import ValidationError
from procureflow.models import Supplier
from procureflow.schemas import SupplierCreate, Supplier as SupplierSchema

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[SupplierSchema])
async def get_suppliers(
    db: Session = Depends(get_db),
    include_inactive: bool = Query(False, description="Include inactive suppliers"),
    include_unregistered: bool = Query(False, description="Include vendors invited by e-mail only"),
    search: Optional[str] = Query(None, description="Search by name, code or email")
):
    """Get suppliers with optional filtering"""
    query = db.query(Supplier)

    if not include_inactive:
        query = query.filter(Supplier.is_active == True)
    if not include_unregistered:
        query = query.filter(Supplier.is_registered == True)

    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Supplier.name.ilike(search_term),
                Supplier.supplier_code.ilike(search_term),
                Supplier.email.ilike(search_term)
            )
        )

    return query.order_by(Supplier.name, Supplier.id).all()


@router.post("", response_model=SupplierSchema, status_code=status.HTTP_201_CREATED)
async def create_supplier(supplier_data: SupplierCreate, db: Session = Depends(get_db)):
    """
    Register a supplier. A provisional supplier previously invited by the
    same e-mail is promoted instead of duplicated.
    """
    existing = db.query(Supplier).filter(
        func.lower(Supplier.name) == supplier_data.name.strip().lower(),
        Supplier.is_registered == True
    ).first()
    if existing:
        raise ValidationError("A supplier with this name already exists")

    supplier = None
    if supplier_data.email:
        supplier = db.query(Supplier).filter(
            func.lower(Supplier.email) == supplier_data.email.lower(),
            Supplier.is_registered == False
        ).first()

    if supplier:
        logger.info(f"Promoting provisional supplier {supplier.id} ({supplier.email}) to registered")
    else:
        supplier = Supplier()
        db.add(supplier)

    supplier.name = supplier_data.name.strip()
    supplier.supplier_code = supplier_data.supplier_code
    supplier.contact_person = supplier_data.contact_person
    supplier.email = supplier_data.email
    supplier.phone = supplier_data.phone
    supplier.address = supplier_data.address
    supplier.is_registered = True
    supplier.is_active = True

    db.commit()
    db.refresh(supplier)

    return supplier
