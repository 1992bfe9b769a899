import csv
import re
from io import StringIO
from typing import Sequence

from models import Transaction


EXPORT_HEADER = ["Date", "Description", "Type", "Amount", "Cashback", "Category", "Notes"]


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
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.description),
                txn.type.value,
                format_amount(txn.amount_cents),
                format_amount(txn.cashback_cents or 0),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.notes or ""),
            ]
        )
    return output.getvalue()
