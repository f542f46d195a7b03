import csv
import re
from io import StringIO
from typing import Mapping, Optional, Sequence


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
        r"^(cmd|powershell|bash|sh)(\s|$)",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


TYPE_LABELS = {"income": "Income", "expense": "Expense", "transfer": "Transfer"}


def export_ledger(
    entries: Sequence,
    category_names: Mapping[Optional[int], str],
    account_names: Mapping[int, str],
) -> str:
    """Render ledger entries (stored transactions or occurrences) as CSV text."""
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Type", "Name", "Amount", "Category", "Account", "Note"])
    for entry in entries:
        writer.writerow(
            [
                entry.date.isoformat(),
                TYPE_LABELS.get(entry.type.value, entry.type.value),
                sanitize_csv_value(entry.name or ""),
                f"{entry.amount_cents / 100:.2f}",
                sanitize_csv_value(category_names.get(entry.category_id, "")),
                sanitize_csv_value(account_names.get(entry.account_id, "")),
                sanitize_csv_value(entry.note or ""),
            ]
        )
    return output.getvalue()
