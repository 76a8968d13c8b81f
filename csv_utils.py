import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import Transaction, TransactionType
from schemas import CSVRow

CSV_COLUMNS = ["Date", "Type", "Amount", "Account", "Category", "Description", "Notes"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%d.%m.%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{value}'")


def parse_amount(value: str) -> int:
    clean = value.strip().replace("R$", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def parse_csv(content: str) -> tuple[list[tuple[int, CSVRow]], list[str]]:
    """Parse an export-format CSV; rows are numbered from 1 after the header."""
    reader = csv.DictReader(StringIO(content))
    rows: list[tuple[int, CSVRow]] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            type_raw = (raw.get("Type") or "").strip().lower()
            try:
                type_value = TransactionType(type_raw)
            except ValueError as exc:
                raise ValueError(f"Unknown type '{type_raw}'") from exc
            notes_raw = (raw.get("Notes") or "").strip()
            rows.append(
                (
                    idx,
                    CSVRow(
                        date=parse_date(raw.get("Date") or ""),
                        type=type_value,
                        amount_cents=parse_amount(raw.get("Amount") or "0"),
                        account=(raw.get("Account") or "").strip(),
                        category=(raw.get("Category") or "").strip(),
                        description=(raw.get("Description") or "").strip(),
                        notes=notes_raw or None,
                    ),
                )
            )
        except (ValueError, ValidationError) as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.description),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
