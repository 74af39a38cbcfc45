"""
Purchase request line-item spreadsheet (template download and upload parsing).

Layout of the first sheet:
    row 1  column headers
    row 2  instructions
    row 3  blank
    row 4+ data
"""
import io
import zipfile
import logging
from typing import List
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.utils.exceptions import InvalidFileException

from procureflow.exceptions import ValidationError
from procureflow.schemas import ImportRowInput

logger = logging.getLogger(__name__)

LINE_ITEM_COLUMNS = [
    "Model *", "Make", "Category", "Sub Category", "UOM", "Description", "Quantity *", "Unit Price"
]

FIRST_DATA_ROW = 4

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def create_styled_workbook(columns: List[str], sheet_name: str = "Line Items") -> Workbook:
    """Create a styled Excel workbook with headers"""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")
    thin_border = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin')
    )

    for col_idx, column in enumerate(columns, 1):
        cell = ws.cell(row=1, column=col_idx, value=column)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = header_alignment
        cell.border = thin_border
        ws.column_dimensions[cell.column_letter].width = max(15, len(column) + 5)

    ws.freeze_panes = "A2"

    return wb


def build_line_item_template() -> io.BytesIO:
    """Excel template for bulk-loading purchase request lines"""
    wb = create_styled_workbook(LINE_ITEM_COLUMNS)
    ws = wb.active

    # Row 2: instructions, row 3 stays blank
    ws.cell(row=2, column=1, value="Fill one item per row starting at row 4. Columns marked * are required.")
    ws.cell(row=2, column=1).font = Font(italic=True, color="808080")

    sample = ["Latitude 5440", "Dell", "IT Hardware", "Laptops", "Piece", "14 inch, 16GB RAM", 10, 45000]
    for col_idx, value in enumerate(sample, 1):
        ws.cell(row=FIRST_DATA_ROW, column=col_idx, value=value)
    ws.column_dimensions["A"].width = 30
    ws.column_dimensions["F"].width = 40

    ws_instructions = wb.create_sheet("Instructions")
    instructions = [
        ["Import Instructions"],
        [""],
        ["1. Fill in the items on the 'Line Items' sheet, starting at row 4"],
        ["2. Do not modify the column headers or remove rows 1-3"],
        ["3. Replace or delete the sample row before uploading"],
        ["4. Save the file and upload it on the purchase request screen"],
        [""],
        ["Column Descriptions:"],
        ["Model", "Required. Model or item name, matched against the item master"],
        ["Make", "Manufacturer / brand"],
        ["Category", "Used only when the model is not found in the item master"],
        ["Sub Category", "Used only when the model is not found in the item master"],
        ["UOM", "Unit of measure (e.g., Piece, Box, KG)"],
        ["Description", "Free-text specification"],
        ["Quantity", "Required. Must be greater than 0"],
        ["Unit Price", "Estimated price per unit. Defaults to 0"],
    ]

    for row_idx, row_data in enumerate(instructions, 1):
        for col_idx, value in enumerate(row_data, 1):
            ws_instructions.cell(row=row_idx, column=col_idx, value=value)

    ws_instructions["A1"].font = Font(bold=True, size=14)
    ws_instructions.column_dimensions["A"].width = 20
    ws_instructions.column_dimensions["B"].width = 60

    output = io.BytesIO()
    wb.save(output)
    output.seek(0)
    return output


def _cell_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _cell_number(value):
    # Numeric cells pass through, anything else is left for row validation
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        return float(value)
    return _cell_text(value)


def parse_line_item_sheet(content: bytes) -> List[ImportRowInput]:
    """
    Read the rows of an uploaded line-item workbook.
    Rows with a blank model cell, or one containing the word "model", are skipped.
    """
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        logger.warning(f"Unreadable line-item workbook: {e}")
        raise ValidationError("Could not read the uploaded file. Please upload an Excel (.xlsx) file.")

    try:
        ws = wb.worksheets[0]
        rows = []
        for row_idx, row in enumerate(ws.iter_rows(min_row=FIRST_DATA_ROW, values_only=True), FIRST_DATA_ROW):
            cells = list(row) + [None] * (len(LINE_ITEM_COLUMNS) - len(row))
            model = _cell_text(cells[0])
            if not model or "model" in model.lower():
                continue

            rows.append(ImportRowInput(
                model=model,
                make=_cell_text(cells[1]),
                category=_cell_text(cells[2]),
                sub_category=_cell_text(cells[3]),
                uom=_cell_text(cells[4]),
                description=_cell_text(cells[5]),
                quantity=_cell_number(cells[6]),
                unit_price=_cell_number(cells[7]),
                row_number=row_idx
            ))
    finally:
        wb.close()

    if not rows:
        raise ValidationError("The uploaded file contains no line items")

    logger.info(f"Parsed {len(rows)} line-item rows from workbook")
    return rows
