# fleak/services/adjudicator_service.py
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from flask import current_app

from fleak.errors import UpstreamUnavailable, InvalidOperation

PARSE_FAILURE_RATIONALE = "Unable to parse adjudicator response"

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

INSTRUCTIONS = (
    "You are adjudicating a Fleak challenge: decide whether the evidence shows "
    "the commitment was completed.\n"
    "Return only a JSON object with an integer field score (0 to 100) and a "
    "string field rationale."
)


@dataclass(frozen=True)
class AiVerdict:
    score: int
    rationale: str


def build_prompt(summary: Dict[str, Any]) -> str:
    evidence_lines = [
        f"CID: {item['cid']}, uploader: {item['uploaderId']}, mime: {item['mimeType']}"
        + (f", title: {item['title']}" if item.get('title') else "")
        for item in summary.get("evidence", [])
    ]
    description = summary.get("description") or "none"
    return (
        f"Flake {summary['flakeId']} title: {summary['title']}.\n"
        f"Description: {description}.\n"
        f"Verification type: {summary['verificationType']}.\n"
        f"Evidence: {chr(10).join(evidence_lines) or 'no evidence yet'}.\n"
        f"Attestations count: {summary.get('attestationCount', 0)}."
    )


def parse_verdict(text: Optional[str]) -> AiVerdict:
    """Read {score, rationale} out of model output; anything malformed scores 0."""
    if not text:
        return AiVerdict(0, f"{PARSE_FAILURE_RATIONALE}: empty reply")

    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        parsed = json.loads(candidate)
        score = int(round(float(parsed["score"])))
    except (ValueError, TypeError, KeyError, OverflowError) as e:
        return AiVerdict(0, f"{PARSE_FAILURE_RATIONALE}: {type(e).__name__}")

    rationale = parsed.get("rationale")
    if not isinstance(rationale, str) or not rationale.strip():
        rationale = "No rationale provided"
    return AiVerdict(max(0, min(100, score)), rationale.strip())


class AdjudicatorService:

    @staticmethod
    def _generate_url():
        model = current_app.config['GEMINI_MODEL']
        if not model.startswith("models/"):
            model = f"models/{model}"
        return f"{current_app.config['GEMINI_ENDPOINT'].rstrip('/')}/{model}:generateContent"

    @staticmethod
    def analyze(prompt: str) -> AiVerdict:
        """Send a prompt to the judge model and return its score and rationale"""
        api_key = current_app.config.get('GEMINI_API_KEY')
        if not api_key:
            raise InvalidOperation("AI adjudicator is not configured")

        payload = {
            "contents": [{"role": "user", "parts": [{"text": f"{INSTRUCTIONS}\nPrompt: {prompt}"}]}],
            "generationConfig": {
                "temperature": current_app.config.get('GEMINI_TEMPERATURE', 0.7),
                "maxOutputTokens": current_app.config.get('GEMINI_MAX_TOKENS', 1000),
                "responseMimeType": "application/json",
            },
        }

        try:
            response = requests.post(
                AdjudicatorService._generate_url(),
                headers={'x-goog-api-key': api_key, 'Content-Type': 'application/json'},
                json=payload,
                timeout=current_app.config.get('EXTERNAL_TIMEOUT_SECONDS', 15.0)
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            current_app.logger.error(f"Adjudicator request failed: {e}")
            raise UpstreamUnavailable("AI adjudicator unavailable") from e

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            current_app.logger.warning("Adjudicator reply had no candidate text")
            return AiVerdict(0, f"{PARSE_FAILURE_RATIONALE}: no candidate text")

        verdict = parse_verdict(text)
        current_app.logger.info(f"Adjudicator score: {verdict.score}")
        return verdict

    @staticmethod
    def review(summary: Dict[str, Any]) -> AiVerdict:
        return AdjudicatorService.analyze(build_prompt(summary))
