# /api_server.py
# -*- coding: utf-8 -*-
"""
JSON API for the discount tracker.

GET  /api/sheets                -> {"data": [invoice rows]}
GET  /api/discounts             -> {"entries": [...]}
POST /api/discounts/reconcile   {customerName, monthKey, action} -> {"reconciliationMonths": [...]}
GET  /api/discounts/export      -> missing_discounts_YYYY-MM-DD.xlsx
"""

from __future__ import annotations
from io import BytesIO
import argparse
import logging
import os

from flask import Flask, jsonify, request, send_file

import sheets_store as store
from discount_logic import ACTIONS, RECONCILE, build_missing_export, build_summaries, export_filename

logger = logging.getLogger(__name__)

app = Flask(__name__)

def _entry_json(e):
    return {
        "customerName": e["customer_name"],
        "reconciliationMonths": e["reconciliation_months"],
        "monthlyRebate": e.get("monthly_rebate", ""),
        "qRent": e.get("q_rent", ""),
        "bRent": e.get("b_rent", ""),
    }

def _invoice_json(r):
    return {
        "date": r["date"],
        "dueDate": r["due_date"],
        "number": r["number"],
        "customerName": r["customer_name"],
        "salesRep": r["sales_rep"],
        "debit": r["debit"],
        "credit": r["credit"],
        "matching": r["matching"],
    }

@app.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})

@app.route("/api/sheets", methods=["GET"])
def sheets():
    try:
        rows = store.get_sheet_data()
    except Exception as e:
        logger.exception("API Error (sheets)")
        return jsonify({"error": "Failed to fetch data", "details": str(e)}), 500
    return jsonify({"data": [_invoice_json(r) for r in rows]})

@app.route("/api/discounts", methods=["GET"])
def discounts():
    try:
        entries = store.get_discount_tracker_entries()
    except Exception as e:
        logger.exception("API Error (discounts)")
        return jsonify({"error": "Failed to fetch discount tracker data", "details": str(e)}), 500
    return jsonify({"entries": [_entry_json(e) for e in entries]})

@app.route("/api/discounts/reconcile", methods=["POST"])
def reconcile():
    body = request.get_json(silent=True) or {}
    customer_name = str(body.get("customerName") or "").strip()
    month_key = str(body.get("monthKey") or "").strip()
    action = body.get("action") or RECONCILE

    if not customer_name or not month_key:
        return jsonify({"error": "customerName and monthKey are required"}), 400
    if action not in ACTIONS:
        return jsonify({"error": f"action must be one of {', '.join(ACTIONS)}"}), 400

    try:
        months = store.reconcile(customer_name, month_key, action)
    except store.CustomerNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.exception("API Error (reconcile)")
        return jsonify({"error": str(e) or "Failed to update reconciliation"}), 500
    return jsonify({"reconciliationMonths": months})

@app.route("/api/discounts/export", methods=["GET"])
def export_missing():
    try:
        summaries = build_summaries(store.get_discount_tracker_entries(), store.get_sheet_data())
        payload = build_missing_export(sorted(summaries, key=lambda s: s["customer_name"].lower()))
    except Exception as e:
        logger.exception("API Error (export)")
        return jsonify({"error": "Failed to export discount tracker", "details": str(e)}), 500
    return send_file(
        BytesIO(payload),
        as_attachment=True,
        download_name=export_filename(),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )

def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default=os.getenv("API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("API_PORT", 5000)))
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host=args.host, port=args.port, debug=False, use_reloader=False)

if __name__ == "__main__":
    main()
