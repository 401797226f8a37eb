# fleak/controllers/flake_controller.py
from dateutil import parser as date_parser
from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt, get_jwt_identity

from fleak.errors import Forbidden, InvalidInput
from fleak.services import flake_service
from fleak.services.flake_service import ParticipantInput
from fleak.services.flake_store import FlakeStore
from fleak.services.websocket_service import emit_flake_update

bp_flakes = Blueprint('flakes', __name__, url_prefix='/api/flakes')


def _caller():
    return get_jwt_identity()


def _payload():
    return request.get_json(silent=True) or {}


def _required(payload, *fields):
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise InvalidInput(f"{', '.join(missing)} required", details={"missing": missing})


def _parse_datetime(value, field):
    try:
        return date_parser.isoparse(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"Invalid {field}")


def _require_settler(flake_id):
    """Settlement is reserved for the Flake's creator or an oracle-role token."""
    if get_jwt().get("role") == "oracle":
        return
    creator_id = FlakeStore.read(flake_id, lambda flake: flake.creator_id)
    if creator_id != _caller():
        raise Forbidden("Only the creator or the oracle can settle this flake")


def _notify(flake_id, status=None, **extra):
    emit_flake_update(flake_id, "flake_updated", dict(flakeId=flake_id, status=status, **extra))


@bp_flakes.post('')
@jwt_required()
def create_flake():
    payload = _payload()
    _required(payload, "title", "stakeAmount", "verificationType", "deadline", "participants")
    if not isinstance(payload["participants"], list):
        raise InvalidInput("participants must be a list")

    participants = []
    for p in payload["participants"]:
        if not isinstance(p, dict) or not (p.get("participantId") or p.get("fid")):
            raise InvalidInput("participantId and stakeAmount required for each participant")
        participants.append(ParticipantInput(
            participant_id=str(p.get("participantId") or p.get("fid")),
            stake_amount=str(p.get("stakeAmount") or payload["stakeAmount"]),
            wallet_address=p.get("walletAddress"),
        ))

    flake = flake_service.create_flake(
        creator_id=_caller(),
        title=payload["title"],
        description=payload.get("description"),
        stake_amount=str(payload["stakeAmount"]),
        verification_type=payload["verificationType"],
        deadline=_parse_datetime(payload["deadline"], "deadline"),
        participants=participants,
    )
    return jsonify({"flake": flake}), 201


@bp_flakes.get('/mine')
@jwt_required()
def list_my_flakes():
    statuses = request.args.getlist("status") or None
    return jsonify(flake_service.list_participant_flakes(_caller(), statuses)), 200


@bp_flakes.get('/attestations/pending')
@jwt_required()
def list_pending_attestations():
    return jsonify(flake_service.list_pending_attestations(_caller())), 200


@bp_flakes.get('/<flake_id>')
@jwt_required()
def get_flake(flake_id):
    return jsonify(flake_service.get_flake(flake_id)), 200


@bp_flakes.get('/<flake_id>/status')
@jwt_required()
def get_status(flake_id):
    return jsonify(flake_service.get_flake_status(flake_id)), 200


@bp_flakes.get('/<flake_id>/deposit-status')
@jwt_required()
def get_deposit_status(flake_id):
    return jsonify(flake_service.get_deposit_status(flake_id)), 200


@bp_flakes.post('/<flake_id>/deposit-intent')
@jwt_required()
def deposit_intent(flake_id):
    payload = _payload()
    _required(payload, "amount")
    intent = flake_service.create_deposit_intent(
        flake_id, _caller(), str(payload["amount"]), wallet_address=payload.get("walletAddress")
    )
    return jsonify(intent), 200


@bp_flakes.post('/<flake_id>/deposit-confirm')
@jwt_required()
def deposit_confirm(flake_id):
    payload = _payload()
    _required(payload, "txHash")
    amount = payload.get("amount")
    status = flake_service.confirm_deposit(
        flake_id, _caller(), payload["txHash"], amount=str(amount) if amount is not None else None
    )
    _notify(flake_id, status["status"], participantId=_caller(), event="deposit_confirmed")
    return jsonify(status), 200


@bp_flakes.post('/<flake_id>/attestations')
@jwt_required()
def submit_attestation(flake_id):
    payload = _payload()
    _required(payload, "verdict")
    result = flake_service.submit_attestation(flake_id, _caller(), payload["verdict"], notes=payload.get("notes"))
    _notify(flake_id, result["status"], event="attestation_submitted")
    return jsonify(result), 201


@bp_flakes.post('/<flake_id>/evidence')
@jwt_required()
def add_evidence(flake_id):
    upload = request.files.get("file")
    if upload is not None:
        result = flake_service.upload_evidence(
            flake_id,
            _caller(),
            upload.read(),
            upload.filename,
            upload.mimetype or "application/octet-stream",
            title=request.form.get("title"),
        )
    else:
        payload = _payload()
        _required(payload, "cid", "mimeType", "sizeBytes")
        result = flake_service.attach_evidence(
            flake_id,
            _caller(),
            payload["cid"],
            payload["mimeType"],
            payload["sizeBytes"],
            title=payload.get("title"),
        )
    _notify(flake_id, event="evidence_added", evidenceCount=result["evidenceCount"])
    return jsonify(result), 201


@bp_flakes.post('/<flake_id>/analyze')
@jwt_required()
def request_ai_review(flake_id):
    result = flake_service.request_ai_review(flake_id)
    _notify(flake_id, result["status"], event="ai_reviewed", score=result["score"])
    return jsonify(result), 200


@bp_flakes.get('/<flake_id>/analyze')
@jwt_required()
def get_ai_review(flake_id):
    return jsonify(flake_service.get_ai_review(flake_id)), 200


@bp_flakes.post('/<flake_id>/verify-automatic')
def verify_automatic(flake_id):
    # no bearer token here: the signed deep-link token is the credential
    payload = _payload()
    _required(payload, "verifierId", "signature")
    completed_at = payload.get("completedAt")
    status = flake_service.verify_automatic(
        flake_id,
        str(payload["verifierId"]),
        payload["signature"],
        completed_at=_parse_datetime(completed_at, "completedAt") if completed_at else None,
    )
    _notify(flake_id, status["status"], event="automatic_verified")
    return jsonify({"status": "ok", "flake": status}), 200


@bp_flakes.post('/<flake_id>/deep-link')
@jwt_required()
def refresh_deep_link(flake_id):
    result = flake_service.refresh_deep_link(flake_id, _caller())
    _notify(flake_id, event="deep_link_refreshed")
    return jsonify(result), 200


@bp_flakes.post('/<flake_id>/resolve')
@jwt_required()
def resolve(flake_id):
    payload = _payload()
    _required(payload, "winnerId", "winnerAddress")
    _require_settler(flake_id)
    result = flake_service.resolve_flake(flake_id, str(payload["winnerId"]), payload["winnerAddress"])
    _notify(flake_id, "RESOLVED", event="resolved", winnerId=str(payload["winnerId"]))
    return jsonify(result), 200


@bp_flakes.post('/<flake_id>/refunds/open')
@jwt_required()
def open_refunds(flake_id):
    _require_settler(flake_id)
    result = flake_service.open_refunds(flake_id)
    _notify(flake_id, "REFUNDING", event="refunds_opened")
    return jsonify(result), 200


@bp_flakes.post('/<flake_id>/refunds/confirm')
@jwt_required()
def confirm_refund(flake_id):
    payload = _payload()
    _required(payload, "txHash", "action")
    action = payload["action"]
    if action == "opened":
        _require_settler(flake_id)
        result = flake_service.mark_refund_opened(flake_id, payload["txHash"])
    elif action == "claimed":
        result = flake_service.mark_refund_claimed(flake_id, _caller(), payload["txHash"])
    else:
        raise InvalidInput("action must be 'opened' or 'claimed'")
    _notify(flake_id, "REFUNDING", event=f"refund_{action}")
    return jsonify({"success": True, **result}), 200


@bp_flakes.get('/<flake_id>/payout')
@jwt_required()
def payout_summary(flake_id):
    return jsonify(flake_service.get_payout_summary(flake_id)), 200
