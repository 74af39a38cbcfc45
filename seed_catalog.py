"""
Seed Catalog and Suppliers
Creates sample item categories, catalog items and registered suppliers so
the line-item import and RFP floating can be tried out locally.
"""
import os
import sys

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy.orm import Session
from procureflow.database import SessionLocal, engine
from procureflow.models import Base, ItemCategory, ItemMaster, Supplier

CATEGORIES = {
    ("IT", "IT Hardware"): [("LAP", "Laptops"), ("MON", "Monitors"), ("NET", "Networking")],
    ("FUR", "Furniture"): [("CHR", "Chairs"), ("DSK", "Desks")],
    ("STN", "Stationery"): [("PAP", "Paper"), ("WRT", "Writing Instruments")],
}

ITEMS = [
    {"item_code": "ITM-0001", "display_name": "Dell Latitude 5440", "model_name": "Latitude 5440", "make": "Dell",
     "category": "IT", "sub_category": "LAP", "uom": "Piece", "reference_price": 45000},
    {"item_code": "ITM-0002", "display_name": "Lenovo ThinkPad E14", "model_name": "ThinkPad E14", "make": "Lenovo",
     "category": "IT", "sub_category": "LAP", "uom": "Piece", "reference_price": 52000},
    {"item_code": "ITM-0003", "display_name": "LG 24MP400 Monitor", "model_name": "24MP400", "make": "LG",
     "category": "IT", "sub_category": "MON", "uom": "Piece", "reference_price": 9500},
    {"item_code": "ITM-0004", "display_name": "TP-Link 24 Port Switch", "model_name": "TL-SG1024D", "make": "TP-Link",
     "category": "IT", "sub_category": "NET", "uom": "Piece", "reference_price": 7800},
    {"item_code": "ITM-0005", "display_name": "Ergonomic Mesh Chair", "model_name": "ErgoMesh 200", "make": "Featherlite",
     "category": "FUR", "sub_category": "CHR", "uom": "Piece", "reference_price": 8200},
    {"item_code": "ITM-0006", "display_name": "Office Desk 1200mm", "model_name": "Desk 1200", "make": "Godrej",
     "category": "FUR", "sub_category": "DSK", "uom": "Piece", "reference_price": 11500},
    {"item_code": "ITM-0007", "display_name": "A4 Copier Paper 75gsm", "model_name": "A4 75gsm", "make": "JK",
     "category": "STN", "sub_category": "PAP", "uom": "Box", "reference_price": 1450},
    {"item_code": "ITM-0008", "display_name": "Ball Pen Blue", "model_name": "Reynolds 045", "make": "Reynolds",
     "category": "STN", "sub_category": "WRT", "uom": "Box", "reference_price": 180},
]

SUPPLIERS = [
    {"supplier_code": "SUP-001", "name": "Sharma IT Solutions", "contact_person": "Ravi Sharma",
     "email": "sales@sharmait.example.com", "phone": "+91-98100-00001"},
    {"supplier_code": "SUP-002", "name": "Metro Office Furnishers", "contact_person": "Anita Desai",
     "email": "orders@metrooffice.example.com", "phone": "+91-98100-00002"},
    {"supplier_code": "SUP-003", "name": "Prime Stationers", "contact_person": "Vikram Rao",
     "email": "prime@stationers.example.com", "phone": "+91-98100-00003"},
    {"supplier_code": "SUP-004", "name": "NetCore Distributors", "contact_person": "Meera Iyer",
     "email": "contact@netcore.example.com", "phone": "+91-98100-00004"},
]


def seed_catalog():
    """Create sample categories, items and suppliers for local testing"""
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()

    try:
        categories = {}
        for (code, name), children in CATEGORIES.items():
            parent = db.query(ItemCategory).filter(
                ItemCategory.parent_id.is_(None), ItemCategory.code == code
            ).first()
            if not parent:
                parent = ItemCategory(code=code, name=name)
                db.add(parent)
                db.flush()
                print(f"  CREATE category: {name} ({code})")
            categories[code] = parent

            for child_code, child_name in children:
                child = db.query(ItemCategory).filter(
                    ItemCategory.parent_id == parent.id, ItemCategory.code == child_code
                ).first()
                if not child:
                    child = ItemCategory(parent_id=parent.id, code=child_code, name=child_name)
                    db.add(child)
                    db.flush()
                    print(f"    CREATE sub-category: {child_name} ({child_code})")
                categories[(code, child_code)] = child

        created_items = skipped_items = 0
        for item_data in ITEMS:
            if db.query(ItemMaster).filter(ItemMaster.item_code == item_data["item_code"]).first():
                skipped_items += 1
                continue

            db.add(ItemMaster(
                item_code=item_data["item_code"],
                display_name=item_data["display_name"],
                model_name=item_data["model_name"],
                make=item_data["make"],
                category_id=categories[item_data["category"]].id,
                sub_category_id=categories[(item_data["category"], item_data["sub_category"])].id,
                uom=item_data["uom"],
                reference_price=item_data["reference_price"],
                is_active=True
            ))
            created_items += 1
            print(f"  CREATE item: {item_data['display_name']} ({item_data['item_code']})")

        created_suppliers = skipped_suppliers = 0
        for supplier_data in SUPPLIERS:
            if db.query(Supplier).filter(Supplier.supplier_code == supplier_data["supplier_code"]).first():
                skipped_suppliers += 1
                continue

            db.add(Supplier(is_registered=True, is_active=True, **supplier_data))
            created_suppliers += 1
            print(f"  CREATE supplier: {supplier_data['name']} ({supplier_data['supplier_code']})")

        db.commit()
        print(f"\nSummary:")
        print(f"  Items: {created_items} created, {skipped_items} skipped (already exist)")
        print(f"  Suppliers: {created_suppliers} created, {skipped_suppliers} skipped (already exist)")

    except Exception as e:
        db.rollback()
        print(f"ERROR: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_catalog()
