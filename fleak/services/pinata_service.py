# fleak/services/pinata_service.py
"""
Evidence pinning on IPFS through Pinata.
Either the file is pinned and a CID comes back, or an error is raised and
the caller records nothing.
"""

from dataclasses import dataclass

import requests
from flask import current_app
from werkzeug.utils import secure_filename

from fleak.errors import UpstreamUnavailable, InvalidOperation


@dataclass(frozen=True)
class EvidenceUpload:
    cid: str
    size: int


class PinataEvidenceService:

    @staticmethod
    def is_pinata_configured():
        return bool(current_app.config.get('PINATA_JWT'))

    @staticmethod
    def upload(data, filename, content_type):
        """Pin a blob and return its content id and pinned size"""
        if not PinataEvidenceService.is_pinata_configured():
            raise InvalidOperation("Evidence store is not configured")

        safe_name = secure_filename(filename or "") or "evidence.bin"
        url = current_app.config['PINATA_API_URL']
        timeout = current_app.config.get('EXTERNAL_TIMEOUT_SECONDS', 15.0)

        current_app.logger.info(f"Pinning evidence {safe_name} ({len(data)} bytes, {content_type})")
        try:
            response = requests.post(
                url,
                headers={'Authorization': f"Bearer {current_app.config['PINATA_JWT']}"},
                files={'file': (safe_name, data, content_type or 'application/octet-stream')},
                timeout=timeout
            )
        except requests.exceptions.RequestException as e:
            current_app.logger.error(f"Pinata upload error: {e}")
            raise UpstreamUnavailable("Evidence store unavailable") from e

        if not response.ok:
            current_app.logger.error(f"Pinata upload failed: {response.status_code} {response.text[:200]}")
            raise UpstreamUnavailable(
                "Evidence upload failed",
                details={'status': response.status_code}
            )

        try:
            body = response.json()
            cid = body['IpfsHash']
            size = int(body.get('PinSize', len(data)))
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamUnavailable("Evidence store returned an invalid response") from e

        current_app.logger.info(f"Evidence pinned: {cid}")
        return EvidenceUpload(cid=cid, size=size)
