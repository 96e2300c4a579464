# /sheets_store.py
# -*- coding: utf-8 -*-
"""
Google Sheets access for the discount tracker (service account, gspread).

Tabs:
- Invoices  A:H  DATE, DUE DATE, NUMBER, CUSTOMER NAME, SALESREP, DEBIT, CREDIT, MATCHING
- DISCOUNTS A:F  CUSTOMER ID, CUSTOMER NAME, RECONCILIATION, MONTHLY REBATE, Q RENT, B RENT
- Users     A:C  NAME, ROLE, PASSWORD

Reconcile writes only DISCOUNTS!C of the customer's row. There is no locking:
two concurrent writes for the same customer are last-writer-wins.
"""

from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional
import hmac
import json
import logging
import os
import time

import gspread
from gspread.exceptions import APIError, WorksheetNotFound
from gspread.utils import rowcol_to_a1
from google.oauth2.service_account import Credentials

from discount_logic import (
    RECONCILE,
    UNRECONCILE,
    apply_reconcile_action,
    format_reconciliation_cell,
    normalize_customer,
    normalize_month_token,
    parse_reconciliation_cell,
    parse_user_list,
)

logger = logging.getLogger(__name__)

# --- Config ------------------------------------------------------------------

SHEET_ID = os.getenv("GOOGLE_SHEET_ID", "")
INVOICES_TAB = os.getenv("GOOGLE_SHEET_NAME", "Invoices")
DISCOUNTS_TAB = "DISCOUNTS"
USERS_TAB = "Users"
SERVICE_ACCOUNT_FILE = os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "assets/service_account.json")
SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

RECONCILE_USERS = parse_user_list(os.getenv("DISCOUNT_RECONCILE_USERS", "MED Sabry"))

# DISCOUNTS columns (0-based)
COL_CUSTOMER, COL_RECONCILIATION, COL_REBATE, COL_Q_RENT, COL_B_RENT = 1, 2, 3, 4, 5

class CredentialsError(RuntimeError):
    pass

class CustomerNotFoundError(LookupError):
    pass

# --- Utilities ---------------------------------------------------------------

def _is_rate_limited(e: Exception) -> bool:
    status = getattr(getattr(e, "response", None), "status_code", None)
    return status == 429 or "quota" in str(e).lower() or "rate limit" in str(e).lower()

def _with_backoff(fn, *args, **kwargs):
    delay = 1.0
    for attempt in range(6):
        try:
            return fn(*args, **kwargs)
        except APIError as e:
            if _is_rate_limited(e) and attempt < 5:
                logger.warning("Sheets rate limited; retrying in %.0fs", delay)
                time.sleep(delay); delay *= 2; continue
            raise

def _cell(row: List, idx: int) -> str:
    return str(row[idx]).strip() if len(row) > idx and row[idx] is not None else ""

def _num(v) -> float:
    try: return float(str(v).replace(",", "").strip() or 0)
    except ValueError: return 0.0

# --- Client ------------------------------------------------------------------

def load_service_account_info(secrets: Optional[Dict] = None) -> Dict:
    """Env JSON first, then Streamlit secrets, then the local key file."""
    raw = os.getenv("GOOGLE_SERVICE_ACCOUNT")
    if raw:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialsError("Failed to parse GOOGLE_SERVICE_ACCOUNT JSON") from e
    if secrets:
        return dict(secrets)
    for path in (Path(SERVICE_ACCOUNT_FILE), Path("..") / SERVICE_ACCOUNT_FILE):
        if path.is_file():
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise CredentialsError(f"Invalid service account file {path}") from e
    raise CredentialsError(
        "GOOGLE_SERVICE_ACCOUNT environment variable is not set and could not read from file"
    )

_client_cache: Dict[str, gspread.Client] = {}
def clear_cache(): _client_cache.clear()

def get_client(secrets: Optional[Dict] = None) -> gspread.Client:
    if "client" not in _client_cache:
        creds = Credentials.from_service_account_info(load_service_account_info(secrets), scopes=SCOPES)
        _client_cache["client"] = gspread.authorize(creds)
    return _client_cache["client"]

def get_worksheet(title: str, secrets: Optional[Dict] = None):
    if not SHEET_ID:
        raise CredentialsError("GOOGLE_SHEET_ID is not configured")
    sh = _with_backoff(get_client(secrets).open_by_key, SHEET_ID)
    try:
        return _with_backoff(sh.worksheet, title)
    except WorksheetNotFound:
        logger.error("Google Sheets: worksheet '%s' not found.", title)
        raise

# --- Reads -------------------------------------------------------------------

def get_sheet_data(ws=None) -> List[Dict]:
    """All invoice rows; header skipped, rows without a customer dropped."""
    ws = ws or get_worksheet(INVOICES_TAB)
    vals = _with_backoff(ws.get_all_values)
    out = []
    for row in vals[1:]:
        customer = _cell(row, 3)
        if not customer:
            continue
        out.append({
            "date": _cell(row, 0),
            "due_date": _cell(row, 1),
            "number": _cell(row, 2),
            "customer_name": customer,
            "sales_rep": _cell(row, 4),
            "debit": _num(_cell(row, 5)),
            "credit": _num(_cell(row, 6)),
            "matching": _cell(row, 7),
        })
    return out

def get_discount_tracker_entries(ws=None) -> List[Dict]:
    ws = ws or get_worksheet(DISCOUNTS_TAB)
    vals = _with_backoff(ws.get_all_values)
    entries = []
    for row in vals[1:]:
        name = _cell(row, COL_CUSTOMER)
        if not name:
            continue
        entries.append({
            "customer_name": name,
            "reconciliation_months": parse_reconciliation_cell(_cell(row, COL_RECONCILIATION)),
            "monthly_rebate": _cell(row, COL_REBATE),
            "q_rent": _cell(row, COL_Q_RENT),
            "b_rent": _cell(row, COL_B_RENT),
        })
    return entries

def get_users(ws=None) -> List[Dict]:
    ws = ws or get_worksheet(USERS_TAB)
    vals = _with_backoff(ws.get_all_values)
    users = []
    for row in vals[1:]:
        name, role, password = _cell(row, 0), _cell(row, 1), _cell(row, 2)
        if name and password:
            users.append({"name": name, "role": role, "password": password})
    return users

def authenticate(name: str, password: str, users: List[Dict]) -> Optional[Dict]:
    for u in users:
        if u["name"].strip().lower() == (name or "").strip().lower():
            if hmac.compare_digest(u["password"].encode("utf-8"), (password or "").encode("utf-8")):
                return {"name": u["name"], "role": u["role"]}
            return None
    return None

# --- Reconcile ---------------------------------------------------------------

def reconcile(customer_name: str, month_key: str, action: str = RECONCILE,
              ws=None, debug: Optional[List[str]] = None) -> List[str]:
    """Add/remove ``month_key`` for the customer and persist the full list.

    Idempotent in both directions. Returns the updated sorted key list.
    """
    key = normalize_month_token(month_key)
    if not key:
        raise ValueError(f"Invalid month key {month_key!r}")
    ws = ws or get_worksheet(DISCOUNTS_TAB)
    vals = _with_backoff(ws.get_all_values)

    target = normalize_customer(customer_name)
    row_abs = None
    for i, row in enumerate(vals[1:], start=2):
        if normalize_customer(_cell(row, COL_CUSTOMER)) == target:
            row_abs = i
            break
    if row_abs is None:
        raise CustomerNotFoundError("Customer not found in DISCOUNTS sheet")

    existing = parse_reconciliation_cell(_cell(vals[row_abs - 1], COL_RECONCILIATION))
    updated = apply_reconcile_action(existing, key, action)

    addr = rowcol_to_a1(row_abs, COL_RECONCILIATION + 1)
    _with_backoff(ws.update, range_name=addr, values=[[format_reconciliation_cell(updated)]],
                  value_input_option="USER_ENTERED")

    if debug is not None:
        debug.append(f"[{DISCOUNTS_TAB}] R{row_abs} {customer_name}: {action} {key} -> {len(updated)} month(s)")
    logger.info("%s %s for %s (row %d)", action, key, customer_name, row_abs)
    return updated

def mark_reconciliation_month(customer_name: str, month_key: str, ws=None, debug: Optional[List[str]] = None) -> List[str]:
    return reconcile(customer_name, month_key, RECONCILE, ws=ws, debug=debug)

def unmark_reconciliation_month(customer_name: str, month_key: str, ws=None, debug: Optional[List[str]] = None) -> List[str]:
    return reconcile(customer_name, month_key, UNRECONCILE, ws=ws, debug=debug)
