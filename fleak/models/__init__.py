# fleak/models/__init__.py
from .flake import (
    Flake,
    FlakeParticipant,
    FlakeEvidence,
    FlakeAttestation,
    FlakeStatus,
    VerificationType,
    ParticipantStatus,
    Verdict,
)

__all__ = [
    'Flake', 'FlakeParticipant', 'FlakeEvidence', 'FlakeAttestation',
    'FlakeStatus', 'VerificationType', 'ParticipantStatus', 'Verdict',
]
