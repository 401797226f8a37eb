from unittest.mock import MagicMock, patch

import pytest
import requests

from fleak.errors import UpstreamUnavailable, InvalidOperation
from fleak.services.pinata_service import PinataEvidenceService


def _response(ok=True, status=200, body=None):
    response = MagicMock()
    response.ok = ok
    response.status_code = status
    response.text = "error"
    response.json.return_value = body if body is not None else {}
    return response


def test_upload_returns_cid(app):
    with patch("fleak.services.pinata_service.requests.post") as mock_post:
        mock_post.return_value = _response(body={"IpfsHash": "bafyabc", "PinSize": 321})
        upload = PinataEvidenceService.upload(b"png-bytes", "../proof.png", "image/png")

    assert upload.cid == "bafyabc"
    assert upload.size == 321
    kwargs = mock_post.call_args.kwargs
    assert kwargs["headers"]["Authorization"] == "Bearer pinata-test-jwt"
    name, data, content_type = kwargs["files"]["file"]
    assert name == "proof.png"
    assert data == b"png-bytes"
    assert content_type == "image/png"


def test_upload_without_pin_size_uses_payload_length(app):
    with patch("fleak.services.pinata_service.requests.post", return_value=_response(body={"IpfsHash": "bafy"})):
        upload = PinataEvidenceService.upload(b"12345", "a.txt", "text/plain")

    assert upload.size == 5


def test_upload_rejected_by_store(app):
    with patch("fleak.services.pinata_service.requests.post", return_value=_response(ok=False, status=401)):
        with pytest.raises(UpstreamUnavailable) as exc:
            PinataEvidenceService.upload(b"x", "a.txt", "text/plain")

    assert exc.value.details == {"status": 401}


def test_upload_network_failure(app):
    with patch(
        "fleak.services.pinata_service.requests.post",
        side_effect=requests.exceptions.ConnectionError("down"),
    ):
        with pytest.raises(UpstreamUnavailable):
            PinataEvidenceService.upload(b"x", "a.txt", "text/plain")


def test_upload_reply_without_cid(app):
    with patch("fleak.services.pinata_service.requests.post", return_value=_response(body={"unexpected": True})):
        with pytest.raises(UpstreamUnavailable):
            PinataEvidenceService.upload(b"x", "a.txt", "text/plain")


def test_upload_requires_configuration(app):
    app.config["PINATA_JWT"] = None

    with pytest.raises(InvalidOperation):
        PinataEvidenceService.upload(b"x", "a.txt", "text/plain")
