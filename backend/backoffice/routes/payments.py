# backend/backoffice/routes/payments.py
"""
Payment routes.

Completing, refunding, cancelling or failing a payment reconciles the linked
order's payment status (or the purchase order's paid amount) in the same
unit of work.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor
from ..errors import BackofficeError, error_response
from ..services import payment_service
from ..validation import coerce_datetime, coerce_int, page_payload, pagination_args


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _internal_error(action: str):
    current_app.logger.exception("Failed to %s", action)
    return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


@payments_bp.get("")
def list_payments_route():
    """?payment_type=&payment_method=&status=&start=&end="""
    try:
        page, limit = pagination_args(request.args)
        items, total = payment_service.list_payments(
            payment_type=request.args.get("payment_type") or None,
            payment_method=request.args.get("payment_method") or None,
            status=request.args.get("status") or None,
            start=coerce_datetime(request.args.get("start"), "start"),
            end=coerce_datetime(request.args.get("end"), "end"),
            page=page,
            limit=limit,
        )
        return jsonify(page_payload([p.to_dict() for p in items], total, page, limit)), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list payments")


@payments_bp.get("/stats")
def payment_stats_route():
    try:
        return jsonify({"stats": payment_service.payment_stats()}), 200
    except Exception:
        return _internal_error("load payment stats")


@payments_bp.get("/order/<int:order_id>")
def order_payments_route(order_id: int):
    try:
        payments = payment_service.payments_for_order(order_id)
        return jsonify({"items": [p.to_dict() for p in payments]}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("list order payments")


@payments_bp.get("/<int:payment_id>")
def get_payment_route(payment_id: int):
    try:
        return jsonify({"payment": payment_service.get_payment(payment_id).to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("load payment")


@payments_bp.post("")
@require_actor
def record_payment_route():
    """
    Record a completed payment.

    Body: {"payment_type": "sales"|"purchase", "related_id", "amount_cents",
    "payment_method", "transaction_id", "notes", "payment_date"}
    """
    data = request.get_json(silent=True) or {}
    try:
        payment = payment_service.record_payment(
            payment_type=data.get("payment_type"),
            related_id=coerce_int(data.get("related_id"), "related_id", minimum=1),
            amount_cents=coerce_int(data.get("amount_cents"), "amount_cents", minimum=1),
            payment_method=data.get("payment_method"),
            transaction_id=data.get("transaction_id"),
            notes=data.get("notes"),
            payment_date=coerce_datetime(data.get("payment_date"), "payment_date"),
            actor_id=g.actor_id,
        )
        return jsonify({"payment": payment.to_dict()}), 201
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("record payment")


@payments_bp.put("/<int:payment_id>/complete")
@require_actor
def complete_payment_route(payment_id: int):
    data = request.get_json(silent=True) or {}
    try:
        payment = payment_service.complete_payment(
            payment_id,
            actor_id=g.actor_id,
            transaction_id=data.get("transaction_id"),
        )
        return jsonify({"payment": payment.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("complete payment")


@payments_bp.post("/<int:payment_id>/refund")
@require_actor
def refund_payment_route(payment_id: int):
    data = request.get_json(silent=True) or {}
    try:
        payment = payment_service.process_refund(
            payment_id,
            amount_cents=coerce_int(data.get("amount_cents"), "amount_cents", minimum=1),
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"payment": payment.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("refund payment")


@payments_bp.put("/<int:payment_id>/cancel")
@require_actor
def cancel_payment_route(payment_id: int):
    data = request.get_json(silent=True) or {}
    try:
        payment = payment_service.cancel_payment(payment_id, reason=data.get("reason"))
        return jsonify({"payment": payment.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("cancel payment")


@payments_bp.put("/<int:payment_id>/fail")
@require_actor
def fail_payment_route(payment_id: int):
    data = request.get_json(silent=True) or {}
    try:
        payment = payment_service.mark_payment_failed(payment_id, reason=data.get("reason"))
        return jsonify({"payment": payment.to_dict()}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("mark payment failed")


@payments_bp.delete("/<int:payment_id>")
@require_actor
def delete_payment_route(payment_id: int):
    try:
        payment_service.delete_payment(payment_id)
        return jsonify({"deleted": True, "payment_id": payment_id}), 200
    except BackofficeError as e:
        return error_response(e)
    except Exception:
        return _internal_error("delete payment")
