"""
approvals/blueprints/payments/routes.py

Payment request workflow routes.

Provides:
- POST  /payments/workflow                   (any authenticated originator)
- GET   /payments/workflow/<role>?status=    (accountant | manager queue)
- GET   /payments/workflow/<id>
- PATCH /payments/workflow/<id>/accountant   (accountant)
- PATCH /payments/workflow/<id>/manager      (manager)
- PATCH /payments/workflow/<id>/reject       (accountant | manager)
- POST  /payments/workflow/<id>/sync         (manager; manual Medad re-send)

IMPORTANT:
- Routes only parse and delegate. Rules live in approvals.workflow.payments.
- A request not in the expected prior stage answers 404.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from ...models import ROLE_ACCOUNTANT, ROLE_MANAGER
from ...security import api_login_required, role_param_required, role_required
from ...utils import json_body, parse_optional_bool
from ...workflow import payments as workflow

payments_bp = Blueprint("payments", __name__, url_prefix="/payments/workflow")


@payments_bp.route("", methods=["POST"])
@api_login_required
def create_request():
    payment = workflow.create_payment_request(json_body(), current_user)
    return jsonify(
        {
            "success": True,
            "message": "Payment request sent to accountant stage",
            "request": payment.to_dict(),
        }
    ), 201


@payments_bp.route("/<role>", methods=["GET"])
@role_param_required("role")
def list_requests(role: str):
    requests_ = workflow.list_for_role(role, request.args.get("status", "pending"))
    return jsonify({"success": True, "requests": [p.to_dict() for p in requests_]})


@payments_bp.route("/<int:request_id>", methods=["GET"])
@api_login_required
def get_request(request_id: int):
    payment = workflow.get_payment_request(request_id)
    return jsonify({"success": True, "request": payment.to_dict()})


@payments_bp.route("/<int:request_id>/accountant", methods=["PATCH"])
@role_required(ROLE_ACCOUNTANT)
def accountant_review(request_id: int):
    payment = workflow.accountant_review(request_id, json_body(), current_user)
    return jsonify(
        {
            "success": True,
            "message": "Payment request moved to manager stage",
            "request": payment.to_dict(),
        }
    )


@payments_bp.route("/<int:request_id>/manager", methods=["PATCH"])
@role_required(ROLE_MANAGER)
def manager_decision(request_id: int):
    payment, outcome = workflow.manager_decision(request_id, json_body(), current_user)
    return jsonify(
        {
            "success": True,
            "message": "Payment request approved by manager",
            "request": payment.to_dict(),
            "medad": outcome.to_dict(),
        }
    )


@payments_bp.route("/<int:request_id>/reject", methods=["PATCH"])
@role_required(ROLE_ACCOUNTANT, ROLE_MANAGER)
def reject_request(request_id: int):
    payment = workflow.reject_payment(request_id, json_body(), current_user)
    return jsonify({"success": True, "message": "Payment request rejected", "request": payment.to_dict()})


@payments_bp.route("/<int:request_id>/sync", methods=["POST"])
@role_required(ROLE_MANAGER)
def sync_request(request_id: int):
    force = bool(parse_optional_bool(request.args.get("force")))
    payment, outcome = workflow.resync_payment(request_id, force=force)
    status_code = 200 if outcome.ok else 502
    return jsonify(
        {
            "success": outcome.ok,
            "request": payment.to_dict(),
            "medad": outcome.to_dict(),
        }
    ), status_code
