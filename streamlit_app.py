# /streamlit_app.py
# -*- coding: utf-8 -*-
"""
Streamlit UI for the discount tracker (Google Sheets → monthly discount status).

WHY:
- One place to see, per customer, which months have a posted discount (BIL),
  which were reconciled by hand and which are still missing.
- Rules:
    * Range = first SAL month → current month.
    * Avg monthly discount = Σ(credit − debit) of BIL ÷ distinct SAL months.
    * Only authorized users may Fix (reconcile) / Unfix (unreconcile) a month.
- Export of missing months to Excel (Summary + Due Amounts).
"""

from datetime import date

import pandas as pd
import streamlit as st

import sheets_store as store
from discount_logic import (
    FUTURE, MISSING, POSTED, RECONCILE, RECONCILED, UNRECONCILE,
    apply_action_to_summary,
    build_missing_export,
    build_summaries,
    can_reconcile,
    filter_summaries,
    export_filename,
    format_month_label,
    heatmap_years,
    invoice_type,
    parse_date,
    parse_user_list,
    posted_invoices,
    reconciled_before_start,
    step_posted_month,
    sync_entry_months,
)

# --- Page & config -----------------------------------------------------------

st.set_page_config(page_title="Discount Tracker", page_icon="🏷️", layout="wide")
st.title("🏷️ Discount Tracker — Google Sheets")
st.markdown(
    """
<div style="padding:10px;border:1px solid #ddd;border-radius:8px;background:#f7f5f4;margin-bottom:8px">
<b>Legend:</b> 🟩 posted (BIL invoice) · 🟧 reconciled · 🟥 missing · ⬜ future.<br>
<b>Range:</b> first sale month → current month. Missing months are exported with the average monthly discount as due amount.
</div>
""",
    unsafe_allow_html=True,
)

def _secret(name, default=None):
    try:
        return st.secrets.get(name, default)
    except FileNotFoundError:
        return default

SA_SECRETS = _secret("gcp_service_account")
ALLOWED = parse_user_list(_secret("reconcile_users")) or store.RECONCILE_USERS

# --- Login -------------------------------------------------------------------

def login_gate():
    with st.form("login"):
        name = st.text_input("Name")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("🔐 Sign in", use_container_width=True)
    if not submitted:
        st.stop()
    try:
        users = store.get_users(store.get_worksheet(store.USERS_TAB, SA_SECRETS))
    except Exception as e:
        st.error(f"Could not load users.\n\n{e}"); st.stop()
    user = store.authenticate(name, password, users)
    if not user:
        st.error("Invalid name or password."); st.stop()
    st.session_state["user"] = user
    st.rerun()

if "user" not in st.session_state:
    login_gate()

user = st.session_state["user"]
can_fix = can_reconcile(user["name"], ALLOWED)

c1, c2, c3 = st.columns([3, 1, 1])
with c1: st.caption(f"Signed in as **{user['name']}**" + (" · can reconcile" if can_fix else ""))
with c2: reload_now = st.button("🔄 Reload", use_container_width=True)
with c3:
    if st.button("Sign out", use_container_width=True):
        st.session_state.clear(); st.rerun()

verbose_debug = st.checkbox("Verbose debug", value=False)

# --- Data --------------------------------------------------------------------

def load_data():
    st.session_state["invoices"] = store.get_sheet_data(store.get_worksheet(store.INVOICES_TAB, SA_SECRETS))
    st.session_state["entries"] = store.get_discount_tracker_entries(store.get_worksheet(store.DISCOUNTS_TAB, SA_SECRETS))
    st.session_state.pop("selected_summary", None)

if reload_now or "entries" not in st.session_state:
    try:
        with st.spinner("Loading discount tracker..."):
            load_data()
    except Exception as e:
        st.error(f"Failed to load discount tracker data:\n\n{e}")
        st.stop()

invoices = st.session_state["invoices"]
entries = st.session_state["entries"]
debug_accum = st.session_state.setdefault("debug", [])

if not entries:
    st.warning("No customers found in the DISCOUNTS sheet."); st.stop()

today = date.today()
summaries = build_summaries(entries, invoices, today)

# --- Helpers -----------------------------------------------------------------

def do_toggle(summary, month_key, action):
    try:
        months = store.reconcile(
            summary["customer_name"], month_key, action,
            ws=store.get_worksheet(store.DISCOUNTS_TAB, SA_SECRETS),
            debug=debug_accum if verbose_debug else None,
        )
    except Exception as e:
        st.error(f"Failed to update reconciliation: {e}")
        return
    sync_entry_months(entries, summary["customer_name"], months)
    st.session_state["selected_summary"] = apply_action_to_summary(summary, month_key, action)
    st.rerun()

def display_date(key):
    d = parse_date(f"{key}-01")
    return d.strftime("%d/%m/%Y") if d else key

CELL = {POSTED: "🟩", RECONCILED: "🟧", MISSING: "🟥", FUTURE: "⬜"}

def render_heatmap(summary):
    for year, cells in heatmap_years(summary, today):
        st.markdown(f"**{year}**")
        cols = st.columns(12)
        for col, (key, status) in zip(cols, cells):
            with col:
                if status is None:
                    st.write(" ")
                    continue
                label = f"{CELL[status]} {format_month_label(key)}"
                if status == POSTED:
                    count = next(m["count"] for m in summary["posted_months"] if m["key"] == key)
                    if st.button(f"{label} · {count} BIL", key=f"p-{key}"):
                        st.session_state["posted_month"] = key
                elif status == MISSING and can_fix:
                    if st.button(f"{label} Fix?", key=f"f-{key}", help="Click to Reconcile"):
                        do_toggle(summary, key, RECONCILE)
                elif status == RECONCILED and can_fix:
                    if st.button(f"{label} Unfix?", key=f"u-{key}", help="Mark as missing again"):
                        st.session_state["pending_unfix"] = key
                else:
                    st.button(label, key=f"d-{key}", disabled=True)

# --- Table -------------------------------------------------------------------

search = st.text_input("Search customer...")
visible = filter_summaries(summaries, search)

st.download_button(
    "⬇️ Export missing months to Excel",
    data=build_missing_export(visible),
    file_name=export_filename(today),
    mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)

table = pd.DataFrame([
    {
        "#": i,
        "Customer": s["customer_name"],
        "Started": display_date(s["start_key"]),
        "Avg. Monthly Discount": round(s["average_monthly_discount"]),
        "Active Months": s["active_months_count"],
        "Missing": f"{len(s['missing_months'])} month(s)" if s["missing_months"] else "Up to date",
        "Posted": f"{len(s['posted_months'])} month(s)" if s["posted_months"] else "—",
        "Reconciled": f"{len(s['reconciled_months'])} month(s)" if s["reconciled_months"] else "—",
        "Last Discount": s["last_discount_label"],
    }
    for i, s in enumerate(visible, start=1)
])
if table.empty:
    st.info("No customers match your search.")
else:
    st.dataframe(table, use_container_width=True, hide_index=True)

# --- Detail ------------------------------------------------------------------

names = [s["customer_name"] for s in visible]
picked = st.selectbox("Customer details", ["—"] + names)
if picked != "—":
    selected = st.session_state.get("selected_summary")
    if not selected or selected["customer_name"] != picked:
        selected = next(s for s in visible if s["customer_name"] == picked)
        st.session_state["selected_summary"] = selected
        st.session_state.pop("posted_month", None)
        st.session_state.pop("pending_unfix", None)

    st.subheader(selected["customer_name"])
    m1, m2, m3, m4, m5, m6 = st.columns(6)
    m1.metric("Missing", len(selected["missing_months"]))
    m2.metric("Posted", len(selected["posted_months"]))
    m3.metric("Reconciled", len(selected["reconciled_months"]))
    m4.metric("Monthly Rebate", selected["monthly_rebate"] or "—")
    m5.metric("Q Rent", selected["q_rent"] or "—")
    m6.metric("B Rent", selected["b_rent"] or "—")
    if selected["duplicate_months"]:
        st.warning("Duplicate postings: " + ", ".join(f"{m['label']} ({m['count']})" for m in selected["duplicate_months"]))

    render_heatmap(selected)

    early = reconciled_before_start(selected)
    if early:
        st.caption("Reconciled before the first sale (not shown above): " + ", ".join(m["label"] for m in early))

    pending = st.session_state.get("pending_unfix")
    if pending:
        st.warning(f"Un-reconcile {format_month_label(pending)}? This will mark it as missing.")
        y, n = st.columns(2)
        if y.button("Yes, unfix", key="confirm-unfix", use_container_width=True):
            st.session_state.pop("pending_unfix", None)
            do_toggle(selected, pending, UNRECONCILE)
        if n.button("Cancel", key="cancel-unfix", use_container_width=True):
            st.session_state.pop("pending_unfix", None); st.rerun()

    pm = st.session_state.get("posted_month")
    if pm:
        rows = posted_invoices(invoices, selected["customer_name"], pm)
        prev_key, next_key = step_posted_month(selected, pm, -1), step_posted_month(selected, pm, 1)
        b1, b2, _ = st.columns([1, 1, 4])
        if b1.button("◀ Previous", key="pm-prev", disabled=prev_key is None):
            st.session_state["posted_month"] = prev_key; st.rerun()
        if b2.button("Next ▶", key="pm-next", disabled=next_key is None):
            st.session_state["posted_month"] = next_key; st.rerun()
        st.markdown(f"**Posted discounts — {format_month_label(pm)}**")
        st.dataframe(pd.DataFrame([
            {"Date": r["date"], "Number": r["number"], "Type": invoice_type(r),
             "Debit": r["debit"], "Credit": r["credit"], "Matching": r["matching"]}
            for r in rows
        ]), use_container_width=True, hide_index=True)

if verbose_debug and debug_accum:
    st.subheader("Verbose Debug (sheets_store)"); st.code("\n".join(debug_accum), language="text")

# ---------------------------------------------------------------------------
# FOOTER
# ---------------------------------------------------------------------------

st.divider()
st.caption(
    "Discount Tracker © {year}. Data is read from Google Sheets on every load; "
    "reconcile writes are last-writer-wins.".format(year=today.year)
)
