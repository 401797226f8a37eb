from io import BytesIO
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from fleak.services.adjudicator_service import AdjudicatorService, AiVerdict
from fleak.services.pinata_service import EvidenceUpload, PinataEvidenceService

from tests.conftest import WALLET_A, WALLET_B, tx


@pytest.fixture
def created(client, auth_header, deadline):
    def create(verification_type="social", participants=("u1", "u2")):
        response = client.post(
            "/api/flakes",
            json={
                "title": "No sugar for a month",
                "stakeAmount": "0.01",
                "verificationType": verification_type,
                "deadline": deadline.isoformat(),
                "participants": [
                    {"participantId": pid, "walletAddress": WALLET_A if i == 0 else WALLET_B}
                    for i, pid in enumerate(participants)
                ],
            },
            headers=auth_header("u1"),
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()["flake"]
    return create


def _stake(client, auth_header, flake_id, *pids):
    for i, pid in enumerate(pids):
        response = client.post(
            f"/api/flakes/{flake_id}/deposit-confirm",
            json={"txHash": tx(i + 1), "amount": "0.01"},
            headers=auth_header(pid),
        )
        assert response.status_code == 200


def test_create_requires_token(client):
    response = client.post("/api/flakes", json={"title": "x"})

    assert response.status_code == 401


def test_create_validates_body(client, auth_header):
    response = client.post("/api/flakes", json={"title": "x"}, headers=auth_header("u1"))

    assert response.status_code == 400
    body = response.get_json()
    assert body["error"] == "invalid_input"
    assert "deadline" in body["details"]["missing"]


def test_create_and_read(client, auth_header, created):
    flake = created()

    response = client.get(f"/api/flakes/{flake['flakeId']}", headers=auth_header("u2"))
    assert response.status_code == 200
    assert response.get_json()["creatorId"] == "u1"

    status = client.get(f"/api/flakes/{flake['flakeId']}/status", headers=auth_header("u2")).get_json()
    assert status["status"] == "PENDING_STAKES"


def test_unknown_flake_404(client, auth_header):
    response = client.get("/api/flakes/nope", headers=auth_header("u1"))

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_staking_flow_emits_updates(client, auth_header, created):
    flake = created()

    intent = client.post(
        f"/api/flakes/{flake['flakeId']}/deposit-intent",
        json={"amount": "0.01"},
        headers=auth_header("u1"),
    ).get_json()
    assert intent["calldata"].startswith("0x")

    with patch("fleak.controllers.flake_controller.emit_flake_update") as emit:
        _stake(client, auth_header, flake["flakeId"], "u1", "u2")

    assert emit.call_count == 2
    assert emit.call_args.args[2]["status"] == "ACTIVE"
    deposit = client.get(f"/api/flakes/{flake['flakeId']}/deposit-status", headers=auth_header("u1")).get_json()
    assert deposit["pendingParticipants"] == []


def test_stake_by_outsider_forbidden(client, auth_header, created):
    flake = created()

    response = client.post(
        f"/api/flakes/{flake['flakeId']}/deposit-confirm",
        json={"txHash": tx(1)},
        headers=auth_header("stranger"),
    )
    assert response.status_code == 403


def test_attestation_conflict_on_repeat(client, auth_header, created):
    flake = created()
    url = f"/api/flakes/{flake['flakeId']}/attestations"

    assert client.post(url, json={"verdict": "approved"}, headers=auth_header("u2")).status_code == 201
    assert client.post(url, json={"verdict": "approved"}, headers=auth_header("u2")).status_code == 409

    pending = client.get("/api/flakes/attestations/pending", headers=auth_header("u2")).get_json()
    assert pending == []


def test_evidence_upload_and_cid(client, auth_header, created):
    flake = created()
    url = f"/api/flakes/{flake['flakeId']}/evidence"

    with patch.object(PinataEvidenceService, "upload", return_value=EvidenceUpload("bafyfile", 4)):
        response = client.post(
            url,
            data={"file": (BytesIO(b"data"), "proof.png", "image/png"), "title": "Week 1"},
            headers=auth_header("u2"),
            content_type="multipart/form-data",
        )
    assert response.status_code == 201
    assert response.get_json()["evidence"]["title"] == "Week 1"

    response = client.post(
        url,
        json={"cid": "bafyexisting", "mimeType": "video/mp4", "sizeBytes": 9000},
        headers=auth_header("u1"),
    )
    assert response.get_json()["evidenceCount"] == 2


def test_ai_review_round_trip(client, auth_header, created):
    flake = created(verification_type="ai")
    url = f"/api/flakes/{flake['flakeId']}/analyze"

    with patch.object(AdjudicatorService, "review", return_value=AiVerdict(91, "Strong evidence")):
        response = client.post(url, headers=auth_header("u1"))
    assert response.status_code == 200
    assert response.get_json()["verdict"] == "approved"

    stored = client.get(url, headers=auth_header("u2")).get_json()
    assert stored["score"] == 91


def test_ai_review_on_social_flake_422(client, auth_header, created):
    flake = created()

    response = client.post(f"/api/flakes/{flake['flakeId']}/analyze", headers=auth_header("u1"))
    assert response.status_code == 422


def test_verify_automatic_uses_signature_not_bearer(client, created):
    flake = created(verification_type="automatic")
    signature = parse_qs(urlparse(flake["deepLink"]).query)["signature"][0]
    url = f"/api/flakes/{flake['flakeId']}/verify-automatic"

    bad = client.post(url, json={"verifierId": "u1", "signature": "garbage"})
    assert bad.status_code == 401

    good = client.post(url, json={"verifierId": "u1", "signature": signature, "completedAt": "2026-10-20T06:00:00Z"})
    assert good.status_code == 200
    assert good.get_json()["flake"]["status"] == "AWAITING_VERDICT"


def test_resolve_restricted_to_creator_or_oracle(client, auth_header, created):
    flake = created()
    url = f"/api/flakes/{flake['flakeId']}/resolve"
    body = {"winnerId": "u2", "winnerAddress": WALLET_B}

    assert client.post(url, json=body, headers=auth_header("u2")).status_code == 403

    response = client.post(url, json=body, headers=auth_header("svc", role="oracle"))
    assert response.status_code == 200
    assert response.get_json()["calldata"].startswith("0x")

    assert client.post(url, json=body, headers=auth_header("u1")).status_code == 409
    payout = client.get(f"/api/flakes/{flake['flakeId']}/payout", headers=auth_header("u1")).get_json()
    assert [p["winner"] for p in payout["participants"]] == [False, True]


def test_refund_flow(client, auth_header, created):
    flake = created()
    _stake(client, auth_header, flake["flakeId"], "u1")
    base = f"/api/flakes/{flake['flakeId']}/refunds"

    assert client.post(f"{base}/open", headers=auth_header("u1")).status_code == 200

    opened = client.post(f"{base}/confirm", json={"txHash": tx(9), "action": "opened"}, headers=auth_header("u1"))
    assert opened.status_code == 200

    claimed = client.post(f"{base}/confirm", json={"txHash": tx(10), "action": "claimed"}, headers=auth_header("u1"))
    assert claimed.get_json() == {
        "success": True,
        "flakeId": flake["flakeId"],
        "participantId": "u1",
        "refundsComplete": True,
    }

    bad = client.post(f"{base}/confirm", json={"txHash": tx(11), "action": "burned"}, headers=auth_header("u1"))
    assert bad.status_code == 400


def test_my_flakes_filter(client, auth_header, created):
    created()
    created(participants=("u1", "u3"))

    mine = client.get("/api/flakes/mine", headers=auth_header("u2")).get_json()
    assert len(mine) == 1
    assert client.get("/api/flakes/mine?status=ACTIVE", headers=auth_header("u1")).get_json() == []
