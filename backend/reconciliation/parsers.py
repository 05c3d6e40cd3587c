"""
Sales File Parsers

Turns uploaded CSV / Excel exports from vending machines into row dicts
keyed by the HwSaleRow field names (camelCase). Validation of the values
is left to the import service so bad rows are reported, not fatal.
"""

import csv
import io
import logging
import re
from typing import Any, Dict, List, Optional

from openpyxl import load_workbook

from database.reconciliation_models import HwImportSource

logger = logging.getLogger(__name__)

# Normalized header -> HwSaleRow alias
HEADER_ALIASES: Dict[str, str] = {
    "saledate": "saleDate",
    "date": "saleDate",
    "datetime": "saleDate",
    "time": "saleDate",
    "soldat": "saleDate",
    "machinecode": "machineCode",
    "machine": "machineCode",
    "machineno": "machineCode",
    "machinenumber": "machineCode",
    "terminal": "machineCode",
    "machineid": "machineId",
    "amount": "amount",
    "sum": "amount",
    "total": "amount",
    "price": "amount",
    "paymentmethod": "paymentMethod",
    "payment": "paymentMethod",
    "paymenttype": "paymentMethod",
    "ordernumber": "orderNumber",
    "order": "orderNumber",
    "orderno": "orderNumber",
    "orderid": "orderNumber",
    "productname": "productName",
    "product": "productName",
    "productcode": "productCode",
    "sku": "productCode",
    "quantity": "quantity",
    "qty": "quantity",
    "currency": "currency",
}


def normalize_header(header: Any) -> Optional[str]:
    """Map a raw column header to a HwSaleRow field name, or None if unknown."""
    if header is None:
        return None
    key = re.sub(r"[^a-z0-9]", "", str(header).strip().lower())
    return HEADER_ALIASES.get(key)


def _map_row(headers: List[Optional[str]], values: List[Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for field, value in zip(headers, values):
        if field is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        # First matching column wins
        if field not in row or row[field] in (None, ""):
            row[field] = value
    return row


def _is_blank(values: List[Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in values)


def parse_csv_content(content: bytes) -> List[Dict[str, Any]]:
    """
    Parse CSV bytes (UTF-8, optional BOM, ',' or ';' delimited).

    Raises:
        ValueError: undecodable content or no header row
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ValueError(f"Failed to parse CSV: file is not UTF-8 ({e})")

    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel

    reader = csv.reader(io.StringIO(text, newline=""), dialect=dialect)
    try:
        raw_headers = next(reader)
    except StopIteration:
        raise ValueError("Failed to parse CSV: file is empty")

    headers = [normalize_header(h) for h in raw_headers]
    if not any(headers):
        raise ValueError("Failed to parse CSV: no recognised columns in header row")

    rows = []
    for values in reader:
        if _is_blank(values):
            continue
        rows.append(_map_row(headers, values))
    return rows


def parse_excel_content(content: bytes) -> List[Dict[str, Any]]:
    """
    Parse the first sheet of an .xlsx workbook; the first non-empty row is the header.

    Raises:
        ValueError: unreadable workbook or no header row
    """
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ValueError(f"Failed to parse Excel file: {e}")

    try:
        sheet = wb.worksheets[0]
        headers: Optional[List[Optional[str]]] = None
        rows = []
        for values in sheet.iter_rows(values_only=True):
            values = list(values)
            if _is_blank(values):
                continue
            if headers is None:
                headers = [normalize_header(h) for h in values]
                if not any(headers):
                    raise ValueError("Failed to parse Excel file: no recognised columns in header row")
                continue
            rows.append(_map_row(headers, values))
    finally:
        wb.close()

    if headers is None:
        raise ValueError("Failed to parse Excel file: sheet is empty")
    return rows


def parse_sales_file(content: bytes, source: str, filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Parse an uploaded sales export.

    Args:
        content: Raw file bytes
        source: csv | excel
        filename: Original name, used for logging only

    Returns:
        Row dicts ready for SalesImportService.import_sales
    """
    kind = HwImportSource(source)
    if kind == HwImportSource.CSV:
        rows = parse_csv_content(content)
    elif kind == HwImportSource.EXCEL:
        rows = parse_excel_content(content)
    else:
        raise ValueError(f"Files cannot be parsed for import source '{kind.value}'")

    logger.info(f"Parsed {len(rows)} sale rows from {filename or kind.value} upload")
    return rows


def detect_import_source(filename: Optional[str], content_type: Optional[str] = None) -> Optional[str]:
    """Guess csv/excel from the upload's name or content type."""
    name = (filename or "").lower()
    if name.endswith(".csv"):
        return HwImportSource.CSV.value
    if name.endswith((".xlsx", ".xlsm")):
        return HwImportSource.EXCEL.value

    ctype = (content_type or "").lower()
    if "csv" in ctype:
        return HwImportSource.CSV.value
    if "spreadsheetml" in ctype or "excel" in ctype:
        return HwImportSource.EXCEL.value
    return None
