"""
Batch Import Engine

Turns spreadsheet rows into purchase request lines by resolving each row's
model name against the catalog. Rows are resolved in fixed-size batches:
every lookup in a batch runs concurrently and the whole batch is awaited
before the next one starts.
"""
import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Callable, List, NamedTuple, Optional

from procureflow.config import settings
from procureflow.exceptions import ValidationError
from procureflow.schemas import CatalogItem, ImportRowInput, PurchaseRequestLineCreate
from procureflow.services.catalog_resolver import CatalogResolver

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class ParsedRow(NamedTuple):
    row: ImportRowInput
    quantity: Decimal
    unit_price: Decimal


def _to_decimal(value) -> Decimal:
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    return Decimal(str(value))


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_rows(rows: List[ImportRowInput]) -> List[ParsedRow]:
    """
    Check every row before any lookup is made.
    All problems are reported together, prefixed with the row number.
    """
    errors = []
    parsed = []

    for index, row in enumerate(rows):
        row_number = row.row_number or index + 1
        row_errors = []

        if _is_blank(row.model):
            row_errors.append(f"Row {row_number}: Model is required")

        quantity = None
        if _is_blank(row.quantity):
            row_errors.append(f"Row {row_number}: Quantity is required")
        else:
            try:
                quantity = _to_decimal(row.quantity)
            except (InvalidOperation, ValueError):
                row_errors.append(f"Row {row_number}: Quantity '{row.quantity}' is not a number")
            else:
                if not quantity.is_finite() or quantity <= 0:
                    row_errors.append(f"Row {row_number}: Quantity must be greater than 0")

        unit_price = Decimal("0")
        if not _is_blank(row.unit_price):
            try:
                unit_price = _to_decimal(row.unit_price)
            except (InvalidOperation, ValueError):
                row_errors.append(f"Row {row_number}: Unit Price '{row.unit_price}' is not a number")
            else:
                if not unit_price.is_finite() or unit_price < 0:
                    row_errors.append(f"Row {row_number}: Unit Price cannot be negative")

        if row_errors:
            errors.extend(row_errors)
        else:
            parsed.append(ParsedRow(row=row, quantity=quantity, unit_price=unit_price))

    if errors:
        raise ValidationError(f"{len(errors)} error(s) found in the uploaded rows", errors)

    return parsed


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def build_line(parsed: ParsedRow, match: Optional[CatalogItem]) -> PurchaseRequestLineCreate:
    """Line from a catalog hit, or from the raw spreadsheet text with item_id 0"""
    row = parsed.row
    model = _clean(row.model)

    if match is None:
        return PurchaseRequestLineCreate(
            item_id=0,
            category_name=_clean(row.category),
            sub_category_name=_clean(row.sub_category),
            model_name=model,
            make=_clean(row.make),
            uom_name=_clean(row.uom),
            description=_clean(row.description),
            quantity=float(parsed.quantity),
            unit_price=float(parsed.unit_price)
        )

    return PurchaseRequestLineCreate(
        item_id=match.id,
        category_id=match.category_id or 0,
        category_name=match.category_name,
        sub_category_id=match.sub_category_id or 0,
        sub_category_name=match.sub_category_name,
        model_name=match.model_name or match.display_name or model,
        make=match.make,
        uom_name=match.uom_name,
        description=_clean(row.description),
        quantity=float(parsed.quantity),
        unit_price=float(parsed.unit_price)
    )


class BatchImportEngine:
    """Resolves spreadsheet rows against the catalog with bounded concurrency"""

    def __init__(self, resolver: CatalogResolver, batch_size: Optional[int] = None):
        self.resolver = resolver
        self.batch_size = batch_size or settings.import_batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    async def _resolve_row(self, parsed: ParsedRow) -> PurchaseRequestLineCreate:
        try:
            match = await self.resolver.resolve(_clean(parsed.row.model))
        except Exception:
            logger.exception(f"Catalog lookup crashed for '{parsed.row.model}', keeping raw row")
            match = None
        return build_line(parsed, match)

    async def run(
        self,
        rows: List[ImportRowInput],
        on_progress: Optional[ProgressCallback] = None
    ) -> List[PurchaseRequestLineCreate]:
        """
        Resolve all rows. The result has one line per input row, in input order.
        on_progress(completed, total) is called after every batch.
        """
        parsed_rows = validate_rows(rows)
        total = len(parsed_rows)
        lines: List[PurchaseRequestLineCreate] = []

        for start in range(0, total, self.batch_size):
            batch = parsed_rows[start:start + self.batch_size]
            resolved = await asyncio.gather(*(self._resolve_row(parsed) for parsed in batch))
            lines.extend(resolved)

            logger.info(f"Resolved {len(lines)}/{total} import rows")
            if on_progress:
                on_progress(len(lines), total)

        matched = sum(1 for line in lines if line.item_id)
        logger.info(f"Import finished: {matched} of {total} rows matched the catalog")
        return lines
