"""
approvals/blueprints/orders/routes.py

Order and quotation routes. Both kinds share the acceptance chain, so the routes are
registered by one helper on two blueprints.

Provides (for <kind> in orders, quotations):
- POST   /<kind>                      create with products
- GET    /<kind>?status=&awaiting=&query=&page=&limit=
- GET    /<kind>/<id>                 record with lines, client and derived stage
- PUT    /<kind>/<id>                 edit (starts a new acceptance round when needed)
- DELETE /<kind>/<id>
- PUT    /<kind>/<id>/accept/<role>   manager | supervisor | storekeeper
- PUT    /<kind>/<id>/reject
Orders only:
- PUT    /orders/<id>/delivered       driver
- POST   /orders/<id>/sync            manual Medad invoice

IMPORTANT:
- Delivered records refuse edit/delete with 400; out-of-order acceptance answers 409.
- Delete also answers 400 once anyone accepted the record or Medad booked it.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...models import ROLE_DRIVER, ROLE_MANAGER, ROLE_SALES_REP, ROLE_STOREKEEPER, ROLE_SUPERVISOR
from ...security import api_login_required, role_param_required, role_required
from ...utils import json_body, parse_optional_bool
from ...workflow.acceptance import AcceptanceWorkflow, orders, quotations

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")
quotations_bp = Blueprint("quotations", __name__, url_prefix="/quotations")

AUTHOR_ROLES = (ROLE_SALES_REP, ROLE_SUPERVISOR, ROLE_MANAGER)
REJECT_ROLES = (ROLE_MANAGER, ROLE_SUPERVISOR, ROLE_STOREKEEPER)


def _record_payload(record, outcome=None) -> dict:
    data = {"success": True, "record": record.to_dict(with_lines=True)}
    if outcome is not None:
        data["medad"] = outcome.to_dict()
    return data


def register_acceptance_routes(bp: Blueprint, workflow: AcceptanceWorkflow) -> None:
    """Attach the shared acceptance-chain routes for `workflow` to `bp`."""

    @bp.route("", methods=["POST"])
    @role_required(*AUTHOR_ROLES)
    def create_record():
        record = workflow.create(json_body(), current_user)
        return jsonify(_record_payload(record)), 201

    @bp.route("", methods=["GET"])
    @api_login_required
    def list_records():
        return jsonify({"success": True, **workflow.list(request.args)})

    @bp.route("/<int:record_id>", methods=["GET"])
    @api_login_required
    def get_record(record_id: int):
        return jsonify(_record_payload(workflow.get(record_id)))

    @bp.route("/<int:record_id>", methods=["PUT"])
    @role_required(*AUTHOR_ROLES)
    def edit_record(record_id: int):
        record = workflow.edit(record_id, json_body(), current_user)
        return jsonify(_record_payload(record))

    @bp.route("/<int:record_id>", methods=["DELETE"])
    @role_required(*AUTHOR_ROLES)
    def delete_record(record_id: int):
        workflow.delete(record_id, current_user)
        return jsonify({"success": True, "message": f"{workflow.label.title()} deleted"})

    @bp.route("/<int:record_id>/accept/<role>", methods=["PUT"])
    @role_param_required("role")
    def accept_record(record_id: int, role: str):
        record, outcome = workflow.accept(record_id, role, json_body(), current_user)
        return jsonify(_record_payload(record, outcome))

    @bp.route("/<int:record_id>/reject", methods=["PUT"])
    @role_required(*REJECT_ROLES)
    def reject_record(record_id: int):
        record = workflow.reject(record_id, json_body(), current_user)
        return jsonify(_record_payload(record))


register_acceptance_routes(orders_bp, orders)
register_acceptance_routes(quotations_bp, quotations)


@orders_bp.route("/<int:record_id>/delivered", methods=["PUT"])
@role_required(ROLE_DRIVER)
def mark_delivered(record_id: int):
    record = orders.deliver(record_id, json_body(), current_user)
    return jsonify(_record_payload(record))


@orders_bp.route("/<int:record_id>/sync", methods=["POST"])
@role_required(ROLE_MANAGER)
def sync_order(record_id: int):
    force = bool(parse_optional_bool(request.args.get("force")))
    record, outcome = orders.resync(record_id, force=force)
    payload = _record_payload(record, outcome)
    payload["success"] = outcome.ok
    return jsonify(payload), 200 if outcome.ok else 502
