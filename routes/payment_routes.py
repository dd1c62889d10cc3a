from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping

from flask import Blueprint, current_app, jsonify, request, session

from extensions import db, limiter
from utils import admin_required, current_parent, is_admin, parent_required
from utils import payment_store as store
from utils.access import check_relationship, check_payment_status, payment_alerts
from utils.errors import Forbidden, InvalidSignature, ValidationError
from utils.mobile_money import MobileMoneyGateway, ProviderStatus
from utils.settlement import (
    apply_settlement,
    handle_webhook,
    initiate_payment,
    reconcile_all_parents,
    recompute_parent_totals,
    verify_payment,
)
from utils.timezone_helpers import utcnow


payments_bp = Blueprint("payments", __name__, url_prefix="/api/v1/payments")


def _gateway() -> MobileMoneyGateway:
    return MobileMoneyGateway.from_config(current_app.config)


def _initiate_limit() -> str:
    return current_app.config.get("RATELIMIT_INITIATE", "10 per minute")


def _school_scope():
    raw = request.args.get("schoolId")
    if raw:
        try:
            return int(raw)
        except ValueError:
            raise ValidationError("schoolId must be an integer")
    return session.get("school_id")


def _json_object() -> Mapping[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValidationError("Request body must be a JSON object")
    return data


def _check_signature() -> None:
    secret = (current_app.config.get("MOBILE_MONEY_WEBHOOK_SECRET") or "").strip()
    if not secret:
        return
    sent = (request.headers.get("X-Webhook-Signature") or "").strip().lower()
    expected = hmac.new(secret.encode("utf-8"), request.get_data(), hashlib.sha256).hexdigest()
    if not sent or not hmac.compare_digest(sent, expected):
        raise InvalidSignature("Invalid webhook signature")


@payments_bp.route("/initiate", methods=["POST"])
@limiter.limit(_initiate_limit)
@parent_required
def initiate():
    parent = current_parent()
    payment, result = initiate_payment(parent, request.get_json(silent=True) or {}, _gateway())
    if result is None:
        return jsonify({
            "status": "success",
            "message": "Payment recorded",
            "data": {"payment": payment.to_dict()},
        }), 201
    return jsonify({
        "status": "success",
        "message": result.message or "Payment initiated",
        "data": {
            "payment": payment.to_dict(),
            "paymentUrl": result.payment_url,
            "ussdCode": result.ussd_code,
        },
    })


@payments_bp.route("/verify/<transaction_id>", methods=["GET", "POST"])
def verify(transaction_id: str):
    # Authenticate before the lookup so unknown ids are not revealed to anonymous callers
    parent = None if is_admin() else current_parent()
    payment = store.get_payment_by_transaction(transaction_id)
    if parent is not None and parent.id != payment.parent_id:
        raise Forbidden("Access to this payment is not allowed", transaction_id=transaction_id)
    outcome = verify_payment(transaction_id, _gateway())
    return jsonify({
        "status": "success",
        "data": {"payment": outcome.payment.to_dict(), "verification": outcome.to_dict()},
    })


@payments_bp.route("/webhook/mobile-money", methods=["POST"])
def mobile_money_webhook():
    _check_signature()
    payload = request.get_json(silent=True)
    outcome = handle_webhook(payload)
    return jsonify({
        "status": "success",
        "message": "Webhook processed",
        "data": outcome.to_dict(),
    })


@payments_bp.route("/history", methods=["GET"])
@parent_required
def history():
    payments = store.payments_for_parent(current_parent().id)
    return jsonify({
        "status": "success",
        "results": len(payments),
        "data": {"payments": [p.to_dict() for p in payments]},
    })


@payments_bp.route("/status/<int:student_id>", methods=["GET"])
@parent_required
def payment_status(student_id: int):
    parent = current_parent()
    check_relationship(parent.id, student_id)
    decision = check_payment_status(parent.id, student_id)
    return jsonify({
        "status": "success",
        "data": {"parentStatus": parent.payment_status, "access": decision.to_dict()},
    })


@payments_bp.route("/overdue", methods=["GET"])
@admin_required
def overdue():
    payments = store.overdue_payments(_school_scope(), utcnow())
    return jsonify({
        "status": "success",
        "results": len(payments),
        "data": {"payments": [p.to_dict() for p in payments]},
    })


@payments_bp.route("/alerts", methods=["GET"])
@admin_required
def alerts():
    rows = payment_alerts(_school_scope())
    return jsonify({"status": "success", "results": len(rows), "data": {"parents": rows}})


@payments_bp.route("/<int:payment_id>/status", methods=["PATCH"])
@admin_required
def update_status(payment_id: int):
    data = _json_object()
    raw_status = data.get("status")
    if raw_status is not None and not isinstance(raw_status, str):
        raise ValidationError("status must be a string")
    payment = store.get_payment(payment_id)
    status = (raw_status or "").strip().lower()
    applied = False
    if status:
        if status not in ("completed", "failed"):
            raise ValidationError("status must be 'completed' or 'failed'")
        outcome = apply_settlement(
            payment.transaction_id,
            ProviderStatus(status),
            amount=data.get("amountPaid"),
        )
        payment, applied = outcome.payment, outcome.applied
    notes = data.get("notes")
    if notes:
        store.update_payment(payment, notes=str(notes))
        db.session.commit()
    return jsonify({
        "status": "success",
        "message": "Payment status updated" if applied else ("Payment notes updated" if notes else "Payment unchanged"),
        "data": {"payment": payment.to_dict(), "applied": applied},
    })


@payments_bp.route("/reconcile", methods=["POST"])
@admin_required
def reconcile():
    parent_id = _json_object().get("parentId")
    if parent_id is None:
        rows = reconcile_all_parents()
    else:
        if isinstance(parent_id, (bool, float)):
            raise ValidationError("parentId must be an integer")
        try:
            parent_id = int(parent_id)
        except (TypeError, ValueError):
            raise ValidationError("parentId must be an integer")
        rows = [recompute_parent_totals(parent_id)]
    return jsonify({"status": "success", "results": len(rows), "data": {"parents": rows}})
