# /discount_logic.py
# -*- coding: utf-8 -*-
"""
Month reconciliation math for the discount tracker.

Key rules:
- Month keys are "YYYY-MM"; labels are "MonYY" (2024-01 -> Jan24).
- SAL invoices define the customer's active months and the first sale month.
- BIL invoices are posted discounts, counted per month (count > 1 = duplicate).
- Start month = first SAL month, else earliest posted/reconciled month,
  else January of the current year. Range runs to the current month inclusive.
- A month is posted (has a BIL), reconciled (manually marked), or missing.
  Future months are never missing.
- Average monthly discount = sum(credit - debit) over BIL / distinct SAL months.
"""

from __future__ import annotations
from datetime import date, datetime
from io import BytesIO
from typing import Dict, Iterable, List, Optional, Tuple
import re

import pandas as pd

MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']
MONTH_ABBREVIATIONS = {name.upper(): i for i, name in enumerate(MONTH_NAMES, start=1)}

RECONCILE = "reconcile"
UNRECONCILE = "unreconcile"
ACTIONS = (RECONCILE, UNRECONCILE)

POSTED, RECONCILED, MISSING, FUTURE = "posted", "reconciled", "missing", "future"

# --- Date parsing (tolerant to the formats found in the Invoices tab) --------

_DATE_FORMATS = [
    "%Y-%m-%d", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%fZ", "%Y/%m/%d",
    "%b-%y", "%b-%Y", "%b %Y", "%B %Y",
    "%d-%b-%Y", "%d-%b-%y", "%d %b %Y", "%d %B %Y",
    "%b %d, %Y", "%B %d, %Y",
]

def parse_date(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    s = str(value or "").strip()
    if not s:
        return None
    for f in _DATE_FORMATS:
        try:
            return datetime.strptime(s, f)
        except ValueError:
            continue

    # Fallback: numeric D/M/Y, M/D/Y or Y-M-D, ignoring any time part
    parts = re.split(r"[/\-]", re.split(r"[ T]", s)[0])
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    a, b, c = (int(p) for p in parts)
    if len(parts[0]) == 4:
        y, m, d = a, b, c
    elif a > 12:
        d, m, y = a, b, c
    else:
        m, d, y = a, b, c
    if y < 100:
        y += 2000
    try:
        return datetime(y, m, d)
    except ValueError:
        return None

# --- Month keys --------------------------------------------------------------

def to_month_key(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return f"{dt.year:04d}-{dt.month:02d}"

def month_key_of(value) -> Optional[str]:
    return to_month_key(parse_date(value))

def current_month_key(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"{today.year:04d}-{today.month:02d}"

def format_month_label(key: str) -> str:
    year, month = key.split("-")
    try:
        name = MONTH_NAMES[int(month) - 1]
    except (ValueError, IndexError):
        name = month
    return f"{name}{year[-2:]}"

def compare_month_keys(a: str, b: str) -> int:
    return (a > b) - (a < b)

def _inc_month(y: int, m: int) -> Tuple[int, int]:
    return (y + (1 if m == 12 else 0), 1 if m == 12 else m + 1)

def add_month(key: str) -> str:
    y, m = _inc_month(*(int(p) for p in key.split("-")))
    return f"{y:04d}-{m:02d}"

def get_month_range(start_key: str, end_key: str) -> List[str]:
    out: List[str] = []
    current = start_key
    while compare_month_keys(current, end_key) <= 0:
        out.append(current)
        current = add_month(current)
    return out

# --- Reconciliation tokens (DISCOUNTS!C) -------------------------------------

_TOKEN_PAT = re.compile(r"^([A-Z]{3})[-/]?(\d{2}|\d{4})$")
_TOKEN_SPLIT = re.compile(r"[,;\s]+")

def normalize_month_token(token: str, fallback_year: Optional[int] = None) -> Optional[str]:
    """JAN25 / JAN2025 / JAN-25 / JAN/25 / 2025-01 -> '2025-01'.

    A bare month name ('JAN') only resolves when ``fallback_year`` is given.
    """
    cleaned = str(token or "").strip().upper()
    if not cleaned:
        return None
    if re.fullmatch(r"\d{4}-\d{2}", cleaned):
        return cleaned if 1 <= int(cleaned[5:]) <= 12 else None
    if fallback_year is not None and cleaned in MONTH_ABBREVIATIONS:
        cleaned = f"{cleaned}{fallback_year}"
    m = _TOKEN_PAT.match(cleaned)
    if not m:
        return None
    month = MONTH_ABBREVIATIONS.get(m.group(1))
    if not month:
        return None
    year = int(m.group(2))
    if year < 100:
        year += 2000
    return f"{year:04d}-{month:02d}"

def format_month_token(key: str) -> str:
    """'2025-09' -> 'SEP25' (the form written back to the sheet)."""
    return format_month_label(key).upper()

def parse_reconciliation_cell(raw) -> List[str]:
    keys = {normalize_month_token(t) for t in _TOKEN_SPLIT.split(str(raw or ""))}
    keys.discard(None)
    return sorted(keys)

def format_reconciliation_cell(keys: Iterable[str]) -> str:
    return ", ".join(format_month_token(k) for k in sorted(set(keys)))

# --- Invoice classification --------------------------------------------------

def _number(row: Dict) -> str:
    return str(row.get("number") or "").strip().upper()

def is_sale(row: Dict) -> bool:
    return _number(row).startswith("SAL")

def is_discount(row: Dict) -> bool:
    return _number(row).startswith("BIL")

def invoice_type(row: Dict) -> str:
    num = _number(row)
    credit = row.get("credit") or 0.0
    if num.startswith("SAL"): return "Sale"
    if num.startswith("RSAL"): return "Return"
    if num.startswith("OB"): return "Opening Balance"
    if num.startswith("BIL") or num.startswith("JV"): return "Discount"
    if credit > 0.01: return "Payment"
    return "Invoice/Txn"

def normalize_customer(name) -> str:
    return str(name or "").strip().lower()

# --- Summary -----------------------------------------------------------------

def _month_item(key: str, count: Optional[int] = None) -> Dict:
    item = {"key": key, "label": format_month_label(key)}
    if count is not None:
        item["count"] = count
    return item

def compute_summary(
    invoices: List[Dict],
    reconciled_keys: Iterable[str],
    customer_name: str = "",
    today: Optional[date] = None,
    entry: Optional[Dict] = None,
) -> Dict:
    """Discount summary for one customer's invoice history.

    ``invoices`` should already be limited to the customer; rows with an
    unparseable date contribute nothing.
    """
    today = today or date.today()
    now_key = current_month_key(today)
    entry = entry or {}

    sales_months = set()
    month_counts: Dict[str, int] = {}
    discounts = []
    for row in invoices:
        if is_sale(row):
            key = month_key_of(row.get("date"))
            if key:
                sales_months.add(key)
        elif is_discount(row):
            discounts.append(row)
            key = month_key_of(row.get("date"))
            if key:
                month_counts[key] = month_counts.get(key, 0) + 1

    reconciled_set = {k for k in (normalize_month_token(k) for k in reconciled_keys) if k}

    known = sorted(set(month_counts) | reconciled_set)
    if sales_months:
        start_key = min(sales_months)
    elif known:
        start_key = known[0]
    else:
        start_key = f"{today.year:04d}-01"

    month_range = get_month_range(start_key, now_key)

    posted = [_month_item(k, month_counts[k]) for k in sorted(month_counts)]
    reconciled = [
        _month_item(k) for k in sorted(reconciled_set)
        if k not in month_counts and compare_month_keys(k, now_key) <= 0
    ]
    reconciled_keys_in_use = {m["key"] for m in reconciled}
    missing = [
        _month_item(k) for k in month_range
        if k not in month_counts and k not in reconciled_keys_in_use
    ]

    total_value = sum((r.get("credit") or 0.0) - (r.get("debit") or 0.0) for r in discounts)
    active = len(sales_months)

    return {
        "customer_name": customer_name or entry.get("customer_name", ""),
        "missing_months": missing,
        "posted_months": posted,
        "reconciled_months": reconciled,
        "duplicate_months": [m for m in posted if m["count"] > 1],
        "total_discounts": len(discounts),
        "total_discount_value": total_value,
        "last_discount_label": format_month_label(posted[-1]["key"]) if posted else "—",
        "start_key": start_key,
        "average_monthly_discount": total_value / active if active else 0.0,
        "active_months_count": active,
        "monthly_rebate": entry.get("monthly_rebate", ""),
        "q_rent": entry.get("q_rent", ""),
        "b_rent": entry.get("b_rent", ""),
    }

def build_summaries(entries: List[Dict], invoices: List[Dict], today: Optional[date] = None) -> List[Dict]:
    by_customer: Dict[str, List[Dict]] = {}
    for row in invoices:
        by_customer.setdefault(normalize_customer(row.get("customer_name")), []).append(row)
    return [
        compute_summary(
            by_customer.get(normalize_customer(e["customer_name"]), []),
            e.get("reconciliation_months") or [],
            customer_name=e["customer_name"],
            today=today,
            entry=e,
        )
        for e in entries
    ]

def filter_summaries(summaries: List[Dict], search: str = "") -> List[Dict]:
    needle = (search or "").strip().lower()
    hits = [s for s in summaries if needle in s["customer_name"].lower()]
    return sorted(hits, key=lambda s: s["customer_name"].lower())

# --- Per-month state ---------------------------------------------------------

def month_status(summary: Dict, key: str, today: Optional[date] = None) -> Optional[str]:
    if compare_month_keys(key, summary["start_key"]) < 0:
        return None
    if compare_month_keys(key, current_month_key(today)) > 0:
        return FUTURE
    if any(m["key"] == key for m in summary["posted_months"]):
        return POSTED
    if any(m["key"] == key for m in summary["reconciled_months"]):
        return RECONCILED
    return MISSING

def heatmap_years(summary: Dict, today: Optional[date] = None) -> List[Tuple[int, List[Tuple[str, Optional[str]]]]]:
    """[(year, [(month_key, status), ... 12 items]), ...] from start year to this year."""
    today = today or date.today()
    start_year = int(summary["start_key"][:4])
    years = []
    for y in range(start_year, max(start_year, today.year) + 1):
        cells = []
        for m in range(1, 13):
            key = f"{y:04d}-{m:02d}"
            cells.append((key, month_status(summary, key, today)))
        years.append((y, cells))
    return years

# --- Reconcile / unreconcile -------------------------------------------------

def apply_reconcile_action(keys: Iterable[str], month_key: str, action: str = RECONCILE) -> List[str]:
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}; expected one of {ACTIONS}")
    updated = set(keys)
    if action == RECONCILE:
        updated.add(month_key)
    else:
        updated.discard(month_key)
    return sorted(updated)

def apply_action_to_summary(summary: Dict, month_key: str, action: str) -> Dict:
    """Local patch after a successful toggle; posted months are never touched."""
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}; expected one of {ACTIONS}")
    missing = [m for m in summary["missing_months"] if m["key"] != month_key]
    reconciled = [m for m in summary["reconciled_months"] if m["key"] != month_key]
    if action == RECONCILE:
        reconciled.append(_month_item(month_key))
    else:
        missing.append(_month_item(month_key))
    patched = dict(summary)
    patched["missing_months"] = sorted(missing, key=lambda m: m["key"])
    patched["reconciled_months"] = sorted(reconciled, key=lambda m: m["key"])
    return patched

def parse_user_list(value) -> List[str]:
    """Allowed-user config: a comma-separated string or a list of names."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(u).strip() for u in value if str(u).strip()]

def can_reconcile(user_name: Optional[str], allowed_users) -> bool:
    name = (user_name or "").strip()
    return bool(name) and name in parse_user_list(allowed_users)

def sync_entry_months(entries: List[Dict], customer_name: str, months: List[str]) -> List[Dict]:
    """Overwrite reconciliation_months on the matching entries in place (case-insensitive)."""
    cust = normalize_customer(customer_name)
    hit = [e for e in entries if normalize_customer(e.get("customer_name")) == cust]
    for entry in hit:
        entry["reconciliation_months"] = list(months)
    return hit

def step_posted_month(summary: Dict, current: Optional[str], offset: int) -> Optional[str]:
    """Neighbour of `current` among the posted months, or None at either end."""
    posted = [m["key"] for m in summary["posted_months"]]
    if current not in posted:
        return None
    i = posted.index(current) + offset
    return posted[i] if 0 <= i < len(posted) else None

def reconciled_before_start(summary: Dict) -> List[Dict]:
    # listed in the counts but never drawn on the heatmap
    return [m for m in summary["reconciled_months"] if compare_month_keys(m["key"], summary["start_key"]) < 0]

def posted_invoices(invoices: List[Dict], customer_name: str, month_key: Optional[str]) -> List[Dict]:
    if not month_key:
        return []
    cust = normalize_customer(customer_name)
    return [
        r for r in invoices
        if is_discount(r)
        and normalize_customer(r.get("customer_name")) == cust
        and month_key_of(r.get("date")) == month_key
    ]

# --- Export ------------------------------------------------------------------

def export_filename(today: Optional[date] = None) -> str:
    return f"missing_discounts_{(today or date.today()).isoformat()}.xlsx"

def build_missing_export(summaries: List[Dict]) -> bytes:
    """Workbook with a Summary sheet and a per-missing-month Due Amounts sheet."""
    summary_rows = [
        {
            "Customer": s["customer_name"],
            "Missing Months": " | ".join(m["label"] for m in s["missing_months"]),
            "Avg. Monthly Discount": s["average_monthly_discount"],
            "Active Months count": s["active_months_count"],
        }
        for s in summaries
    ]
    detail_rows = [
        {"Customer": s["customer_name"], "Month": m["label"], "Due Amount": s["average_monthly_discount"]}
        for s in summaries
        for m in s["missing_months"]
    ]
    buf = BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as xw:
        pd.DataFrame(summary_rows, columns=["Customer", "Missing Months", "Avg. Monthly Discount", "Active Months count"]) \
            .to_excel(xw, sheet_name="Summary", index=False)
        pd.DataFrame(detail_rows, columns=["Customer", "Month", "Due Amount"]) \
            .to_excel(xw, sheet_name="Due Amounts", index=False)
    return buf.getvalue()
