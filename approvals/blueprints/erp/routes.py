"""
approvals/blueprints/erp/routes.py

Read-only Medad bridge.

Provides:
- GET /medad/customers?accountType=&page=&limit=   (proxied to the ERP)

ERP failures surface as 502 (ExternalSyncError) or 503 after retries.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ...models import ROLE_MANAGER, ROLE_SALES_REP, ROLE_SUPERVISOR
from ...security import role_required
from ...utils import optional_text, page_params

erp_bp = Blueprint("erp", __name__, url_prefix="/medad")


@erp_bp.route("/customers", methods=["GET"])
@role_required(ROLE_SALES_REP, ROLE_SUPERVISOR, ROLE_MANAGER)
def list_customers():
    page, limit = page_params(request.args)
    account_type = optional_text(request.args.get("accountType"))

    body = current_app.extensions["erp_client"].list_customers(account_type, page=page, limit=limit)
    return jsonify({"success": True, "page": page, "limit": limit, "customers": body})
