# fleak/services/payload_formatters.py
from datetime import timezone
from typing import Any, Dict, Optional


def to_iso(dt) -> Optional[str]:
    if dt is None:
        return None
    # SQLite hands datetimes back naive; everything is stored in UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _value(enum_or_str):
    return getattr(enum_or_str, "value", enum_or_str)


def format_participant(p) -> Dict[str, Any]:
    return {
        "participantId": p.participant_id,
        "walletAddress": p.wallet_address,
        "stakeAmount": p.stake_amount,
        "status": _value(p.status),
        "depositTxHash": p.deposit_tx_hash,
        "refundTxHash": p.refund_tx_hash,
        "winner": bool(p.winner),
    }


def format_evidence(e) -> Dict[str, Any]:
    return {
        "cid": e.cid,
        "uploaderId": e.uploader_id,
        "mimeType": e.mime_type,
        "sizeBytes": e.size_bytes,
        "title": e.title,
        "uploadedAt": to_iso(e.uploaded_at),
    }


def format_attestation(a) -> Dict[str, Any]:
    return {
        "attestorId": a.attestor_id,
        "verdict": _value(a.verdict),
        "notes": a.notes,
        "submittedAt": to_iso(a.submitted_at),
        "aiScore": a.ai_score,
        "aiRationale": a.ai_rationale,
    }


def format_flake(flake) -> Dict[str, Any]:
    return {
        "flakeId": flake.flake_id,
        "numericId": flake.numeric_id,
        "creatorId": flake.creator_id,
        "title": flake.title,
        "description": flake.description,
        "stakeAmount": flake.stake_amount,
        "verificationType": _value(flake.verification_type),
        "status": _value(flake.status),
        "deadline": to_iso(flake.deadline),
        "deepLink": flake.deep_link,
        "chainId": flake.chain_id,
        "contractAddress": flake.contract_address,
        "refundOpenedTxHash": flake.refund_opened_tx_hash,
        "resolveTxHash": flake.resolve_tx_hash,
        "participants": [format_participant(p) for p in flake.participants],
        "evidence": [format_evidence(e) for e in flake.evidence],
        "attestations": [format_attestation(a) for a in flake.attestations],
        "createdAt": to_iso(flake.created_at),
        "updatedAt": to_iso(flake.updated_at),
    }


def format_flake_status(flake) -> Dict[str, Any]:
    return {
        "flakeId": flake.flake_id,
        "status": _value(flake.status),
        "participants": [
            {
                "participantId": p.participant_id,
                "status": _value(p.status),
                "stakeAmount": p.stake_amount,
                "depositTxHash": p.deposit_tx_hash,
                "winner": bool(p.winner),
            }
            for p in flake.participants
        ],
        "verificationType": _value(flake.verification_type),
        "deadline": to_iso(flake.deadline),
        "evidenceCount": len(flake.evidence),
        "attestationCount": len(flake.attestations),
    }


def format_evidence_summary(flake) -> Dict[str, Any]:
    """Input handed to the AI adjudicator."""
    return {
        "flakeId": flake.flake_id,
        "title": flake.title,
        "description": flake.description,
        "verificationType": _value(flake.verification_type),
        "evidence": [format_evidence(e) for e in flake.evidence],
        "attestationCount": len(flake.attestations),
    }
