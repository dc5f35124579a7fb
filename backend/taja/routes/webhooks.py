# Overview: Flask API route for payments gateway webhooks; verifies, parses input and returns JSON.

# backend/taja/routes/webhooks.py
"""
Payments Webhook

The gateway posts payment outcomes here. Deliveries are authenticated with
the shared `verif-hash` header (when FLUTTERWAVE_WEBHOOK_HASH is set) and
deduplicated by event id, so the gateway may retry freely.

Status codes:
- 200: processed, duplicate, or ignored
- 400: malformed payload
- 401: bad signature
- 502/504: gateway call failed while applying the outcome (gateway retries)
"""

import hmac

from flask import Blueprint, current_app, jsonify, request

from ..errors import DependencyError, GatewayTimeoutError, OrderFlowError, ValidationError
from ..services.order_flow import get_order_flow

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/payments")


def _signature_ok() -> bool:
    expected = (current_app.config.get("FLUTTERWAVE_WEBHOOK_HASH") or "").strip()
    if not expected:
        return True
    received = request.headers.get("verif-hash", "")
    return hmac.compare_digest(received, expected)


@webhooks_bp.post("/webhook")
def payment_webhook():
    if not _signature_ok():
        current_app.logger.warning("Rejected payments webhook with invalid signature")
        return jsonify({"error": "Invalid signature"}), 401

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "JSON body required"}), 400

    event_id = request.headers.get("X-Webhook-Id") or None
    try:
        result = get_order_flow().escrow.handle_webhook(payload, event_id=event_id)
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": e.reason}), 400
    except GatewayTimeoutError as e:
        return jsonify({"error": e.reason}), 504
    except DependencyError as e:
        return jsonify({"error": e.reason}), 502
    except OrderFlowError as e:
        return jsonify({"error": e.reason}), 409
    except Exception:
        current_app.logger.exception("Failed to process payments webhook")
        return jsonify({"error": "Internal server error"}), 500
