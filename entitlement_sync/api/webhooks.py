"""
Order webhook endpoint.

Status codes tell the sender whether a resend can help:
    200  recorded; processed, or failed in a way a resend would not fix
    400  body is not a usable order event (nothing recorded)
    503  retryable: unknown customer, store unavailable, timeout (with Retry-After)
    500  unexpected failure
"""
import json
import logging
from flask import Blueprint, Response, current_app, jsonify, request

from entitlement_sync.errors import MalformedPayloadError
from entitlement_sync.services.ingestion import IngestOutcome

logger = logging.getLogger(__name__)


def _reject_constant(name: str):
    """NaN and Infinity are not JSON and cannot be stored in a JSONB column."""
    raise ValueError(f"Non-standard JSON constant {name}")


def create_webhook_blueprint(webhook_path: str) -> Blueprint:
    """Build the webhook blueprint bound to the configured path."""
    bp = Blueprint("webhooks", __name__)
    bp.add_url_rule(webhook_path, view_func=order_webhook, methods=["POST"])
    return bp


def order_webhook():
    """
    Receive an order event from the payment platform.

    The body is recorded in the webhook log before any processing, reconciled
    synchronously, and the log row is updated with the outcome.
    """
    raw_body = request.get_data()
    if not raw_body:
        logger.warning("Order webhook received empty body")
        return jsonify({"success": False, "message": "Empty request body", "error_code": "malformed_payload"}), 400

    try:
        body = json.loads(raw_body, parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Order webhook body is not valid JSON: {e}")
        return jsonify({"success": False, "message": "Request body is not valid JSON", "error_code": "malformed_payload"}), 400

    ingestor = current_app.extensions["entitlement_sync"]["ingestor"]
    try:
        outcome = ingestor.ingest(body)
    except MalformedPayloadError as e:
        logger.warning(f"Order webhook rejected: {e}")
        return jsonify({"success": False, "message": e.message, "error_code": e.code}), 400
    except Exception:
        logger.exception("Unexpected error during order webhook ingestion")
        return jsonify({"success": False, "message": "Webhook handler error", "error_code": "unexpected_error"}), 500

    return _outcome_response(outcome)


def _outcome_response(outcome: IngestOutcome) -> Response:
    settings = current_app.extensions["entitlement_sync"]["settings"]

    payload = {
        "success": outcome.success,
        "message": outcome.message,
        "log_id": outcome.log_id,
        "retryable": outcome.retryable,
        "error_code": outcome.error_code,
    }
    if outcome.result is not None:
        payload["result"] = outcome.result.to_dict()

    response = jsonify(payload)
    if outcome.success or not outcome.retryable:
        response.status_code = 200
    elif outcome.error_code == "unexpected_error":
        response.status_code = 500
    elif outcome.error_code == "unknown_customer":
        response.status_code = 503
        response.headers["Retry-After"] = str(settings.unknown_customer_retry_after_seconds)
    else:
        response.status_code = 503
        response.headers["Retry-After"] = str(settings.store_retry_after_seconds)

    logger.info(
        f"Order webhook response {response.status_code} "
        f"(log: {outcome.log_id}, success: {outcome.success}, error: {outcome.error_code})"
    )
    return response
