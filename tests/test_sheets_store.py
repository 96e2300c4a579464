# tests/test_sheets_store.py
# Pytest suite for sheet parsing, reconcile persistence and the rate-limit backoff.

import json

import pytest
from gspread.exceptions import APIError

from mock_gspread import FakeResponse, MockWorksheet
import sheets_store as store

# ---------- Helpers ----------

DISCOUNTS_HEADER = ["CUSTOMER ID", "CUSTOMER NAME", "RECONCILIATION", "MONTHLY REBATE", "Q RENT", "B RENT"]

def mk_discounts_sheet():
    return MockWorksheet("DISCOUNTS", [
        DISCOUNTS_HEADER,
        ["C001", "Acme Stores", "JAN25", "2%", "100", "200"],
        ["C002", "Beta Mart", "", "", "", ""],
        ["C003", "", "FEB25", "", "", ""],           # no name: ignored
        ["C004", "Gamma Foods", "dec24; FEB2025, junk"],  # short row
    ])

def mk_invoices_sheet():
    return MockWorksheet("Invoices", [
        ["DATE", "DUE DATE", "NUMBER", "CUSTOMER NAME", "SALESREP", "DEBIT", "CREDIT", "MATCHING"],
        ["2024-01-15", "2024-02-15", "SAL-1", "Acme Stores", "Rep A", "1,250.50", "", ""],
        ["2024-01-31", "", "BIL-1", "Acme Stores", "Rep A", "", "100", "M1"],
        ["2024-02-01", "", "SAL-2", "", "Rep B", "10", "", ""],
        ["2024-02-03", "", "SAL-3", "Beta Mart"],
    ])

@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(store.time, "sleep", lambda s: None)

# ---------- Reads ----------

def test_get_discount_tracker_entries_parses_tokens_and_rates():
    entries = store.get_discount_tracker_entries(mk_discounts_sheet())
    assert [e["customer_name"] for e in entries] == ["Acme Stores", "Beta Mart", "Gamma Foods"]
    acme, beta, gamma = entries
    assert acme["reconciliation_months"] == ["2025-01"]
    assert (acme["monthly_rebate"], acme["q_rent"], acme["b_rent"]) == ("2%", "100", "200")
    assert beta["reconciliation_months"] == []
    assert gamma["reconciliation_months"] == ["2024-12", "2025-02"]
    assert gamma["b_rent"] == ""

def test_get_sheet_data_coerces_numbers_and_skips_blank_customers():
    rows = store.get_sheet_data(mk_invoices_sheet())
    assert [r["number"] for r in rows] == ["SAL-1", "BIL-1", "SAL-3"]
    assert rows[0]["debit"] == 1250.5 and rows[0]["credit"] == 0.0
    assert rows[1]["credit"] == 100.0 and rows[1]["matching"] == "M1"
    assert rows[2]["debit"] == 0.0 and rows[2]["sales_rep"] == ""

def test_get_users_and_authenticate():
    ws = MockWorksheet("Users", [
        ["NAME", "ROLE", "PASSWORD"],
        ["MED Sabry", "admin", "s3cret"],
        ["No Password", "viewer", ""],
    ])
    users = store.get_users(ws)
    assert [u["name"] for u in users] == ["MED Sabry"]
    assert store.authenticate("med sabry", "s3cret", users) == {"name": "MED Sabry", "role": "admin"}
    assert store.authenticate("MED Sabry", "wrong", users) is None
    assert store.authenticate("ghost", "s3cret", users) is None

# ---------- Reconcile ----------

def test_mark_writes_only_reconciliation_cell():
    ws = mk_discounts_sheet()
    debug = []
    months = store.mark_reconciliation_month("beta mart", "2025-02", ws=ws, debug=debug)
    assert months == ["2025-02"]
    assert ws.updates == [("C3", [["FEB25"]])]
    assert ws.cell_value("C3") == "FEB25"
    assert ws.cell_value("B3") == "Beta Mart"
    assert ws.cell_value("C2") == "JAN25"
    assert debug and "R3" in debug[0]

def test_mark_merges_with_existing_tokens_in_key_order():
    ws = mk_discounts_sheet()
    months = store.reconcile("Acme Stores", "DEC24", store.RECONCILE, ws=ws)
    assert months == ["2024-12", "2025-01"]
    assert ws.cell_value("C2") == "DEC24, JAN25"

def test_reconcile_is_idempotent_both_ways():
    ws = mk_discounts_sheet()
    assert store.mark_reconciliation_month("Acme Stores", "2025-01", ws=ws) == ["2025-01"]
    assert store.unmark_reconciliation_month("Acme Stores", "2025-03", ws=ws) == ["2025-01"]
    assert ws.cell_value("C2") == "JAN25"

def test_unmark_removes_month():
    ws = mk_discounts_sheet()
    assert store.unmark_reconciliation_month("Gamma Foods", "2024-12", ws=ws) == ["2025-02"]
    assert ws.cell_value("C5") == "FEB25"

def test_reconcile_rereads_sheet_each_time():
    ws = mk_discounts_sheet()
    store.mark_reconciliation_month("Beta Mart", "2025-02", ws=ws)
    store.mark_reconciliation_month("Beta Mart", "2025-03", ws=ws)
    assert ws.reads == 2
    assert ws.cell_value("C3") == "FEB25, MAR25"

def test_unknown_customer_raises():
    with pytest.raises(store.CustomerNotFoundError):
        store.reconcile("Nobody", "2025-01", ws=mk_discounts_sheet())

def test_bad_action_leaves_sheet_untouched():
    ws = mk_discounts_sheet()
    with pytest.raises(ValueError):
        store.reconcile("Acme Stores", "2025-02", "toggle", ws=ws)
    assert ws.updates == []

# ---------- Backoff ----------

def test_backoff_retries_rate_limits():
    calls = []
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise APIError(FakeResponse(429, "Quota exceeded for quota metric"))
        return "ok"
    assert store._with_backoff(flaky) == "ok"
    assert len(calls) == 3

def test_backoff_reraises_other_errors_immediately():
    calls = []
    def broken():
        calls.append(1)
        raise APIError(FakeResponse(500, "Internal error"))
    with pytest.raises(APIError):
        store._with_backoff(broken)
    assert len(calls) == 1

def test_backoff_gives_up_after_six_attempts():
    calls = []
    def always_limited():
        calls.append(1)
        raise APIError(FakeResponse(429, "Rate Limit Exceeded"))
    with pytest.raises(APIError):
        store._with_backoff(always_limited)
    assert len(calls) == 6

# ---------- Credentials ----------

def test_service_account_from_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT", json.dumps({"client_email": "bot@example.iam"}))
    assert store.load_service_account_info()["client_email"] == "bot@example.iam"

def test_service_account_bad_json(monkeypatch):
    monkeypatch.setenv("GOOGLE_SERVICE_ACCOUNT", "{not json")
    with pytest.raises(store.CredentialsError):
        store.load_service_account_info()

def test_service_account_from_secrets_then_file(monkeypatch, tmp_path):
    monkeypatch.delenv("GOOGLE_SERVICE_ACCOUNT", raising=False)
    assert store.load_service_account_info({"client_email": "s@x"}) == {"client_email": "s@x"}

    key_file = tmp_path / "sa.json"
    key_file.write_text(json.dumps({"client_email": "file@x"}), encoding="utf-8")
    monkeypatch.setattr(store, "SERVICE_ACCOUNT_FILE", str(key_file))
    assert store.load_service_account_info()["client_email"] == "file@x"

def test_service_account_missing_everywhere(monkeypatch, tmp_path):
    monkeypatch.delenv("GOOGLE_SERVICE_ACCOUNT", raising=False)
    monkeypatch.setattr(store, "SERVICE_ACCOUNT_FILE", str(tmp_path / "absent.json"))
    with pytest.raises(store.CredentialsError):
        store.load_service_account_info()

def test_invalid_month_key_is_rejected_before_reading():
    ws = mk_discounts_sheet()
    with pytest.raises(ValueError):
        store.reconcile("Acme Stores", "sometime", ws=ws)
    assert ws.reads == 0 and ws.updates == []
