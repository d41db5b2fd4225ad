"""API routes for transmission status and transport callbacks."""

from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from ..errors import InvalidStateTransitionError, TransmissionNotFoundError
from ..hl7.parser import parse_ack
from ..ledger import TransmissionStatus
from ..transport.base import ACCEPT_CODES

transmissions_bp = Blueprint("transmissions", __name__)


def check_api_key(f):
    """Decorator to check API key for protected endpoints."""
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = current_app.config.get("API_KEY")

        # If no API key configured, allow all requests (dev mode)
        if not api_key:
            return f(*args, **kwargs)

        # Check key from query param or header
        provided_key = request.args.get("key") or request.headers.get("X-API-Key")

        if provided_key != api_key:
            return jsonify({"error": "Invalid or missing API key"}), 401

        return f(*args, **kwargs)

    return decorated


@transmissions_bp.route("/transmissions", methods=["GET"])
@check_api_key
def list_transmissions():
    """List transmissions, newest first.

    Query params: status (comma-separated), tenant, destination, limit
    """
    ledger = current_app.ledger

    statuses = None
    status_param = request.args.get("status")
    if status_param:
        try:
            statuses = [TransmissionStatus(s.strip()) for s in status_param.split(",") if s.strip()]
        except ValueError:
            return jsonify({"error": f"Invalid status: {status_param}"}), 400

    limit = request.args.get("limit", 100, type=int)
    records = ledger.list_by_status(
        status=statuses,
        tenant_id=request.args.get("tenant"),
        destination=request.args.get("destination"),
        limit=min(limit, 1000),
    )
    return jsonify({
        "transmissions": [r.to_dict() for r in records],
        "count": len(records),
    })


@transmissions_bp.route("/transmissions/stats", methods=["GET"])
@check_api_key
def transmission_stats():
    """Counts per status, plus today's volume and retries due."""
    return jsonify(current_app.ledger.get_stats(tenant_id=request.args.get("tenant")))


@transmissions_bp.route("/transmissions/<record_id>", methods=["GET"])
@check_api_key
def get_transmission(record_id):
    """Get one transmission; ?payload=1 includes the message body."""
    record = current_app.ledger.get(record_id)
    if record is None:
        return jsonify({"error": "Transmission not found"}), 404

    include_payload = request.args.get("payload", "").lower() in ("1", "true", "yes")
    return jsonify(record.to_dict(include_payload=include_payload))


@transmissions_bp.route("/transmissions/<record_id>/audit", methods=["GET"])
@check_api_key
def get_transmission_audit(record_id):
    """Audit history for a transmission, oldest first."""
    ledger = current_app.ledger
    if ledger.get(record_id) is None:
        return jsonify({"error": "Transmission not found"}), 404

    entries = ledger.get_audit_trail(record_id)
    return jsonify({
        "transmission_id": record_id,
        "audit": [e.to_dict() for e in entries],
    })


@transmissions_bp.route("/transmissions/<record_id>/ack", methods=["POST"])
@check_api_key
def acknowledge_transmission(record_id):
    """Record the receiver's response to a sent transmission.

    Accepts JSON ``{"ackCode": "AA", "errors": [...]}`` or
    ``{"error": "..."}`` for a delivery failure, or a raw HL7 ACK body.
    """
    ledger = current_app.ledger
    actor = request.headers.get("X-User") or request.args.get("user") or "transport-callback"

    if request.is_json:
        data = request.get_json(silent=True) or {}
        ack_code = data.get("ackCode")
        errors = data.get("errors") or []
        if isinstance(errors, str):
            errors = [errors]
        transport_error = data.get("error")
    else:
        ack = parse_ack(request.get_data(as_text=True))
        if ack is None:
            return jsonify({"error": "Body is neither JSON nor an HL7 ACK"}), 400
        ack_code = ack.ack_code
        errors = ack.errors
        transport_error = None

    try:
        if transport_error:
            record = ledger.mark_error(record_id, str(transport_error), actor=actor)
        elif not ack_code:
            return jsonify({"error": "ackCode is required"}), 400
        elif ack_code in ACCEPT_CODES:
            record = ledger.mark_acknowledged(record_id, ack_code=ack_code, actor=actor)
        else:
            record = ledger.mark_rejected(
                record_id,
                ack_code=ack_code,
                error_detail="; ".join(str(e) for e in errors),
                actor=actor,
            )
    except TransmissionNotFoundError:
        return jsonify({"error": "Transmission not found"}), 404
    except InvalidStateTransitionError as e:
        return jsonify({"success": False, "error": str(e)}), 409

    return jsonify({
        "success": True,
        "transmission_id": record_id,
        "status": record.status.value,
        "ack_code": record.ack_code,
    })
