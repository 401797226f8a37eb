# fleak/services/flake_service.py
r"""
Flake lifecycle engine.

    PENDING_STAKES -> ACTIVE -> AWAITING_VERDICT -> RESOLVED
          \____________\_____________\___________-> REFUNDING

Every write is a single FlakeStore.mutate call. Gateway calls (adjudicator,
evidence store) happen between a read and the write, never inside it, so an
abandoned or failed gateway call leaves the Flake untouched.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation as DecimalError
from typing import List, Optional

from flask import current_app

from fleak.errors import Conflict, Forbidden, InvalidInput, InvalidOperation, Unauthorized
from fleak.models.flake import (
    AI_ATTESTOR_ID,
    ORACLE_ATTESTOR_ID,
    RESERVED_ATTESTOR_IDS,
    Flake,
    FlakeAttestation,
    FlakeEvidence,
    FlakeParticipant,
    FlakeStatus,
    ParticipantStatus,
    Verdict,
    VerificationType,
    utcnow,
)
from fleak.services import deep_link_service, ledger_service
from fleak.services.adjudicator_service import AdjudicatorService
from fleak.services.flake_store import FlakeStore
from fleak.services.payload_formatters import (
    to_iso,
    format_attestation,
    format_evidence,
    format_evidence_summary,
    format_flake,
    format_flake_status,
    format_participant,
)
from fleak.services.pinata_service import PinataEvidenceService

MAX_ID_ATTEMPTS = 5

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass
class ParticipantInput:
    participant_id: str
    stake_amount: str
    wallet_address: Optional[str] = None


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------
def _parse_amount(value, field):
    try:
        amount = Decimal(str(value).strip())
    except (DecimalError, ValueError):
        raise InvalidInput(f"Invalid {field}", details={field: value})
    if not amount.is_finite() or amount <= 0:
        raise InvalidInput(f"Invalid {field}", details={field: value})
    return amount


def _amounts_equal(requested, committed):
    try:
        return Decimal(str(requested).strip()) == Decimal(str(committed))
    except (DecimalError, ValueError):
        return False


def _tx_hash(value, field="txHash"):
    if not isinstance(value, str) or not _TX_HASH_RE.match(value):
        raise InvalidInput(f"Invalid {field}", details={field: value})
    return value.lower()


def _enum(enum_cls, value, field):
    try:
        return enum_cls(getattr(value, "value", value))
    except ValueError:
        raise InvalidInput(f"Invalid {field}", details={field: value})


def _as_utc(dt, field):
    if not isinstance(dt, datetime):
        raise InvalidInput(f"Invalid {field}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------
def _require_participant(flake, participant_id):
    participant = flake.participant(participant_id)
    if not participant:
        raise Forbidden("Participant not part of flake")
    return participant


def _require_open(flake):
    if not flake.is_closed:
        return
    if flake.status == FlakeStatus.RESOLVED:
        raise Conflict("Flake already resolved")
    raise Conflict("Flake refunds already opened")


def _require_party(flake, caller_id):
    if caller_id != flake.creator_id and not flake.participant(caller_id):
        raise Forbidden("Caller not part of flake")


def _require_type(flake, verification_type, message):
    if flake.verification_type != verification_type:
        raise InvalidOperation(message)


def _ledger_target(flake, calldata):
    return {
        "calldata": calldata,
        "chainId": flake.chain_id,
        "contractAddress": flake.contract_address,
    }


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def _allocate_ids():
    for _ in range(MAX_ID_ATTEMPTS):
        flake_id = str(uuid.uuid4())
        numeric_id = ledger_service.to_numeric_id(flake_id)
        if not FlakeStore.numeric_id_exists(numeric_id):
            return flake_id, numeric_id
        current_app.logger.warning(f"On-chain id collision for {flake_id}, drawing a new id")
    raise Conflict("Could not allocate a unique on-chain id")


def create_flake(creator_id, title, stake_amount, verification_type, deadline,
                 participants: List[ParticipantInput], description=None):
    vtype = _enum(VerificationType, verification_type, "verificationType")
    if not title or not str(title).strip():
        raise InvalidInput("Title is required")
    _parse_amount(stake_amount, "stakeAmount")
    deadline = _as_utc(deadline, "deadline")
    if not participants:
        raise InvalidInput("At least one participant is required")

    rows = []
    seen = set()
    for entry in participants:
        pid = (entry.participant_id or "").strip()
        if not pid:
            raise InvalidInput("Participant id is required")
        if pid in RESERVED_ATTESTOR_IDS:
            raise InvalidInput("Participant id is reserved", details={"participantId": pid})
        if pid in seen:
            raise InvalidInput("Duplicate participant", details={"participantId": pid})
        seen.add(pid)
        _parse_amount(entry.stake_amount, "stakeAmount")
        wallet = ledger_service.normalize_address(entry.wallet_address, "walletAddress") if entry.wallet_address else None
        rows.append(FlakeParticipant(
            participant_id=pid,
            stake_amount=str(entry.stake_amount).strip(),
            wallet_address=wallet,
            status=ParticipantStatus.pending,
            winner=False,
        ))

    flake_id, numeric_id = _allocate_ids()
    # a signing failure aborts creation before anything is stored
    deep_link = deep_link_service.build_deep_link(flake_id) if vtype == VerificationType.automatic else None

    now = utcnow()
    flake = Flake(
        flake_id=flake_id,
        numeric_id=str(numeric_id),
        creator_id=creator_id,
        title=str(title).strip(),
        description=description,
        stake_amount=str(stake_amount).strip(),
        verification_type=vtype,
        status=FlakeStatus.PENDING_STAKES,
        deadline=deadline,
        deep_link=deep_link,
        chain_id=current_app.config["CONTRACT_CHAIN_ID"],
        contract_address=current_app.config.get("CONTRACT_ADDRESS"),
        created_at=now,
        updated_at=now,
        participants=rows,
    )
    FlakeStore.create(flake)
    current_app.logger.info(f"Flake {flake_id} created by {creator_id} ({vtype.value}, {len(rows)} participants)")
    return format_flake(flake)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_flake(flake_id):
    return FlakeStore.read(flake_id, format_flake)


def get_flake_status(flake_id):
    return FlakeStore.read(flake_id, format_flake_status)


def get_deposit_status(flake_id):
    def project(flake):
        total = sum((Decimal(p.stake_amount) for p in flake.participants), Decimal(0))
        return {
            "flakeId": flake.flake_id,
            "status": flake.status.value,
            "totalStake": str(total),
            "pendingParticipants": [
                p.participant_id for p in flake.participants if p.status == ParticipantStatus.pending
            ],
            "chainId": flake.chain_id,
            "contractAddress": flake.contract_address,
        }
    return FlakeStore.read(flake_id, project)


def get_payout_summary(flake_id):
    def project(flake):
        summary = {
            "flakeId": flake.flake_id,
            "status": flake.status.value,
            "participants": [format_participant(p) for p in flake.participants],
            "attestations": [format_attestation(a) for a in flake.attestations],
            "refundOpenedTxHash": flake.refund_opened_tx_hash,
            "resolveTxHash": flake.resolve_tx_hash,
            "refundsComplete": _refunds_complete(flake),
        }
        if flake.status == FlakeStatus.REFUNDING:
            # each staked participant withdraws with this call from their own wallet
            summary["withdrawRefund"] = _ledger_target(
                flake, ledger_service.build_withdraw_refund_calldata(int(flake.numeric_id))
            )
        return summary
    return FlakeStore.read(flake_id, project)


def get_ai_review(flake_id):
    def project(flake):
        ai = flake.attestation_by(AI_ATTESTOR_ID)
        return {
            "score": ai.ai_score if ai else None,
            "rationale": ai.ai_rationale if ai else None,
            "verdict": ai.verdict.value if ai else None,
            "updatedAt": to_iso(ai.submitted_at) if ai else None,
        }
    return FlakeStore.read(flake_id, project)


def list_pending_attestations(participant_id):
    flakes = FlakeStore.find_unattested_for_participant(
        participant_id,
        statuses=[FlakeStatus.ACTIVE, FlakeStatus.AWAITING_VERDICT],
        verification_types=[VerificationType.social, VerificationType.ai],
    )
    return [{
        "flakeId": f.flake_id,
        "title": f.title,
        "deadline": to_iso(f.deadline),
        "verificationType": f.verification_type.value,
        "status": f.status.value,
    } for f in flakes]


def list_participant_flakes(participant_id, statuses=None):
    statuses = [_enum(FlakeStatus, s, "status") for s in statuses] if statuses else None
    return [format_flake_status(f) for f in FlakeStore.find_for_participant(participant_id, statuses=statuses)]


def find_expired_unstaked(now=None):
    """Flakes whose deadline passed before every participant staked."""
    now = now or utcnow()
    return [f.flake_id for f in FlakeStore.find_past_deadline(now, [FlakeStatus.PENDING_STAKES])]


# ---------------------------------------------------------------------------
# Staking
# ---------------------------------------------------------------------------
def create_deposit_intent(flake_id, participant_id, amount, wallet_address=None):
    """Calldata for the participant's stake() call. Advisory only: nothing is written."""
    def project(flake):
        participant = _require_participant(flake, participant_id)
        _require_open(flake)
        if participant.status == ParticipantStatus.staked:
            raise Conflict("Stake already deposited")
        if participant.status != ParticipantStatus.pending:
            raise Conflict("Participant can no longer stake")
        if not _amounts_equal(amount, participant.stake_amount):
            raise InvalidInput("Stake amount mismatch", details={"expected": participant.stake_amount})
        beneficiary = wallet_address or participant.wallet_address or ledger_service.ZERO_ADDRESS
        calldata = ledger_service.build_stake_calldata(int(flake.numeric_id), beneficiary)
        intent = _ledger_target(flake, calldata)
        intent["value"] = participant.stake_amount
        return intent

    intent = FlakeStore.read(flake_id, project)
    ttl = current_app.config.get("DEPOSIT_INTENT_TTL_SECONDS", 600)
    intent["expiresAt"] = to_iso(utcnow() + timedelta(seconds=ttl))
    return intent


def confirm_deposit(flake_id, participant_id, tx_hash, amount=None):
    """
    Mark a participant staked. Re-confirming with the same transaction is a
    no-op; a different transaction for an already staked participant is a
    Conflict. The Flake turns ACTIVE once every participant is staked.
    """
    tx_hash = _tx_hash(tx_hash)

    def apply(flake):
        participant = _require_participant(flake, participant_id)
        _require_open(flake)
        if amount is not None and not _amounts_equal(amount, participant.stake_amount):
            raise InvalidInput("Stake amount mismatch", details={"expected": participant.stake_amount})
        if participant.status == ParticipantStatus.staked:
            if participant.deposit_tx_hash == tx_hash:
                return flake
            raise Conflict("Stake already deposited with another transaction")
        if participant.status != ParticipantStatus.pending:
            raise Conflict("Participant can no longer stake")

        participant.status = ParticipantStatus.staked
        participant.deposit_tx_hash = tx_hash
        if flake.status == FlakeStatus.PENDING_STAKES and all(
            p.status == ParticipantStatus.staked for p in flake.participants
        ):
            flake.status = FlakeStatus.ACTIVE
            current_app.logger.info(f"Flake {flake_id} fully staked, now ACTIVE")
        return flake

    flake = FlakeStore.mutate(flake_id, apply)
    return format_flake_status(flake)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------
def submit_attestation(flake_id, attestor_id, verdict, notes=None):
    verdict = _enum(Verdict, verdict, "verdict")
    if not attestor_id or attestor_id in RESERVED_ATTESTOR_IDS:
        raise InvalidInput("Invalid attestor", details={"attestorId": attestor_id})

    def apply(flake):
        _require_open(flake)
        if flake.attestation_by(attestor_id):
            raise Conflict("Attestation already submitted")
        flake.attestations.append(FlakeAttestation(
            attestor_id=attestor_id,
            verdict=verdict,
            notes=notes,
            submitted_at=utcnow(),
        ))
        flake.status = FlakeStatus.AWAITING_VERDICT
        return flake

    flake = FlakeStore.mutate(flake_id, apply)
    return {"flakeId": flake.flake_id, "status": flake.status.value, "attestationCount": len(flake.attestations)}


def _check_ai_reviewable(flake):
    _require_type(flake, VerificationType.ai, "Flake does not support AI review")
    _require_open(flake)
    if flake.attestation_by(AI_ATTESTOR_ID):
        raise Conflict("AI review already recorded")


def request_ai_review(flake_id):
    def project(flake):
        _check_ai_reviewable(flake)
        return format_evidence_summary(flake)

    summary = FlakeStore.read(flake_id, project)
    result = AdjudicatorService.review(summary)

    threshold = current_app.config.get("AI_APPROVAL_THRESHOLD", 60)
    verdict = Verdict.approved if result.score >= threshold else Verdict.rejected

    def apply(flake):
        _check_ai_reviewable(flake)
        flake.attestations.append(FlakeAttestation(
            attestor_id=AI_ATTESTOR_ID,
            verdict=verdict,
            notes="AI-generated verdict",
            submitted_at=utcnow(),
            ai_score=result.score,
            ai_rationale=result.rationale,
        ))
        if verdict == Verdict.approved:
            flake.status = FlakeStatus.AWAITING_VERDICT
        return flake.status

    status = FlakeStore.mutate(flake_id, apply)
    current_app.logger.info(f"AI review for {flake_id}: score={result.score} verdict={verdict.value}")
    return {
        "score": result.score,
        "rationale": result.rationale,
        "verdict": verdict.value,
        "status": status.value,
    }


def verify_automatic(flake_id, verifier_id, signature, completed_at=None):
    # the signed token is checked before the Flake is even loaded
    deep_link_service.verify(flake_id, signature)
    completed_at = _as_utc(completed_at, "completedAt") if completed_at else utcnow()

    def apply(flake):
        _require_type(flake, VerificationType.automatic, "Flake is not automatic")
        _require_participant(flake, verifier_id)
        # only the token in the current deep link is accepted; refreshing revokes older ones
        if deep_link_service.token_from_link(flake.deep_link) != signature:
            raise Unauthorized("Signature superseded")
        _require_open(flake)
        if flake.attestation_by(verifier_id):
            raise Conflict("Attestation already submitted")
        flake.attestations.append(FlakeAttestation(
            attestor_id=verifier_id,
            verdict=Verdict.approved,
            notes="Automatic verification",
            submitted_at=completed_at,
        ))
        flake.status = FlakeStatus.AWAITING_VERDICT
        return flake

    flake = FlakeStore.mutate(flake_id, apply)
    return format_flake_status(flake)


def refresh_deep_link(flake_id, caller_id):
    def apply(flake):
        _require_type(flake, VerificationType.automatic, "Flake is not automatic")
        _require_party(flake, caller_id)
        _require_open(flake)
        flake.deep_link = deep_link_service.build_deep_link(flake.flake_id)
        return flake.deep_link

    return {"flakeId": flake_id, "deepLink": FlakeStore.mutate(flake_id, apply)}


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------
def _check_can_add_evidence(flake, uploader_id):
    _require_party(flake, uploader_id)
    _require_open(flake)


def attach_evidence(flake_id, uploader_id, cid, mime_type, size_bytes, title=None):
    if not cid or not str(cid).strip():
        raise InvalidInput("cid is required")
    try:
        size_bytes = int(size_bytes)
    except (TypeError, ValueError):
        raise InvalidInput("Invalid sizeBytes")
    if size_bytes < 0:
        raise InvalidInput("Invalid sizeBytes")

    def apply(flake):
        _check_can_add_evidence(flake, uploader_id)
        entry = FlakeEvidence(
            cid=str(cid).strip(),
            uploader_id=uploader_id,
            mime_type=mime_type or "application/octet-stream",
            size_bytes=size_bytes,
            title=title,
            uploaded_at=utcnow(),
        )
        flake.evidence.append(entry)
        return format_evidence(entry), len(flake.evidence)

    evidence, count = FlakeStore.mutate(flake_id, apply)
    return {"flakeId": flake_id, "evidence": evidence, "evidenceCount": count}


def upload_evidence(flake_id, uploader_id, data, filename, content_type, title=None):
    """Pin a file, then record it. A failed upload records nothing."""
    if not data:
        raise InvalidInput("File is required")
    FlakeStore.read(flake_id, lambda flake: _check_can_add_evidence(flake, uploader_id))
    upload = PinataEvidenceService.upload(data, filename, content_type)
    return attach_evidence(flake_id, uploader_id, upload.cid, content_type, upload.size, title)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------
def _resolution_call(flake, winner_id, winner_address):
    _require_open(flake)
    if not flake.participant(winner_id):
        raise InvalidInput("Winner is not a participant", details={"winnerId": winner_id})
    address = ledger_service.normalize_address(winner_address, "winnerAddress")
    return address, ledger_service.build_resolve_calldata(int(flake.numeric_id), address)


def prepare_resolution(flake_id, winner_id, winner_address):
    """resolveFlake calldata for a Flake that could be resolved now. Writes nothing."""
    def project(flake):
        _, calldata = _resolution_call(flake, winner_id, winner_address)
        return _ledger_target(flake, calldata)
    return FlakeStore.read(flake_id, project)


def resolve_flake(flake_id, winner_id, winner_address, tx_hash=None):
    """
    Settle the Flake in favour of one participant. Terminal: a second call
    fails with Conflict and leaves every participant untouched.

    tx_hash records the broadcast resolveFlake transaction when the oracle
    sent it before the resolution was stored.
    """
    if tx_hash is not None:
        tx_hash = _tx_hash(tx_hash)

    def apply(flake):
        address, calldata = _resolution_call(flake, winner_id, winner_address)

        for p in flake.participants:
            is_winner = p.participant_id == winner_id
            p.winner = is_winner
            p.status = ParticipantStatus.released if is_winner else ParticipantStatus.refunded
        flake.attestations.append(FlakeAttestation(
            attestor_id=ORACLE_ATTESTOR_ID,
            verdict=Verdict.approved,
            notes=f"Resolved to {address}",
            submitted_at=utcnow(),
        ))
        flake.status = FlakeStatus.RESOLVED
        flake.resolve_tx_hash = tx_hash
        return _ledger_target(flake, calldata)

    result = FlakeStore.mutate(flake_id, apply)
    current_app.logger.info(f"Flake {flake_id} resolved, winner {winner_id}")
    return result


def _open_refunds_call(flake):
    _require_open(flake)
    return ledger_service.build_open_refunds_calldata(int(flake.numeric_id))


def prepare_open_refunds(flake_id):
    """openRefunds calldata for a Flake that could open refunds now. Writes nothing."""
    return FlakeStore.read(flake_id, lambda flake: _ledger_target(flake, _open_refunds_call(flake)))


def open_refunds(flake_id, tx_hash=None):
    if tx_hash is not None:
        tx_hash = _tx_hash(tx_hash)

    def apply(flake):
        calldata = _open_refunds_call(flake)
        flake.status = FlakeStatus.REFUNDING
        flake.refund_opened_tx_hash = tx_hash
        return _ledger_target(flake, calldata)

    result = FlakeStore.mutate(flake_id, apply)
    current_app.logger.info(f"Refunds opened for flake {flake_id}")
    return result


def _require_refunding(flake):
    if flake.status != FlakeStatus.REFUNDING:
        raise Conflict("Refunds are not open for this flake")


def _refunds_complete(flake):
    # participants who never staked have nothing escrowed to claim
    return flake.status == FlakeStatus.REFUNDING and not any(
        p.status == ParticipantStatus.staked for p in flake.participants
    )


def mark_refund_opened(flake_id, tx_hash):
    tx_hash = _tx_hash(tx_hash)

    def apply(flake):
        _require_refunding(flake)
        if flake.refund_opened_tx_hash and flake.refund_opened_tx_hash != tx_hash:
            raise Conflict("Refund opening already recorded with another transaction")
        flake.refund_opened_tx_hash = tx_hash
        return {"flakeId": flake.flake_id, "refundOpenedTxHash": tx_hash}

    return FlakeStore.mutate(flake_id, apply)


def mark_refund_claimed(flake_id, participant_id, tx_hash):
    tx_hash = _tx_hash(tx_hash)

    def apply(flake):
        participant = _require_participant(flake, participant_id)
        _require_refunding(flake)
        if participant.status == ParticipantStatus.refunded:
            if participant.refund_tx_hash == tx_hash:
                return flake
            raise Conflict("Refund already claimed with another transaction")
        if participant.status != ParticipantStatus.staked:
            raise Conflict("Participant has no stake to refund")
        participant.status = ParticipantStatus.refunded
        participant.refund_tx_hash = tx_hash
        return flake

    flake = FlakeStore.mutate(flake_id, apply)
    return {
        "flakeId": flake.flake_id,
        "participantId": participant_id,
        "refundsComplete": _refunds_complete(flake),
    }
