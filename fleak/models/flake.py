# fleak/models/flake.py
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from fleak.extension.extensions import db


def utcnow():
    return datetime.now(timezone.utc)


class FlakeStatus(str, enum.Enum):
    PENDING_STAKES = "PENDING_STAKES"
    ACTIVE = "ACTIVE"
    AWAITING_VERDICT = "AWAITING_VERDICT"
    RESOLVED = "RESOLVED"
    REFUNDING = "REFUNDING"


# No verification, deposit or evidence writes once a Flake reaches one of these
CLOSED_STATUSES = (FlakeStatus.RESOLVED, FlakeStatus.REFUNDING)


class VerificationType(str, enum.Enum):
    automatic = "automatic"
    social = "social"
    ai = "ai"


class ParticipantStatus(str, enum.Enum):
    pending = "pending"
    staked = "staked"
    refunded = "refunded"
    released = "released"


class Verdict(str, enum.Enum):
    approved = "approved"
    rejected = "rejected"
    abstain = "abstain"


AI_ATTESTOR_ID = "ai"
ORACLE_ATTESTOR_ID = "oracle"
RESERVED_ATTESTOR_IDS = frozenset({AI_ATTESTOR_ID, ORACLE_ATTESTOR_ID})


class Flake(db.Model):
    __tablename__ = 'flakes'

    id = Column(Integer, primary_key=True)
    flake_id = Column(String(36), unique=True, nullable=False, index=True)
    # uint64 does not fit a signed BIGINT, so the on-chain id is kept as a decimal string
    numeric_id = Column(String(32), unique=True, nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    stake_amount = Column(String(78), nullable=False)
    verification_type = Column(Enum(VerificationType), nullable=False)
    status = Column(Enum(FlakeStatus), nullable=False, default=FlakeStatus.PENDING_STAKES)
    deadline = Column(DateTime(timezone=True), nullable=False, index=True)
    deep_link = Column(Text, nullable=True)

    chain_id = Column(Integer, nullable=False, default=84532)
    contract_address = Column(String(42), nullable=True)
    refund_opened_tx_hash = Column(String(66), nullable=True)
    resolve_tx_hash = Column(String(66), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    participants = relationship(
        'FlakeParticipant',
        back_populates='flake',
        cascade='all, delete-orphan',
        order_by='FlakeParticipant.id'
    )
    evidence = relationship(
        'FlakeEvidence',
        back_populates='flake',
        cascade='all, delete-orphan',
        order_by='FlakeEvidence.id'
    )
    attestations = relationship(
        'FlakeAttestation',
        back_populates='flake',
        cascade='all, delete-orphan',
        order_by='FlakeAttestation.id'
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_flake_status_verification', 'status', 'verification_type'),
    )

    def participant(self, participant_id):
        for p in self.participants:
            if p.participant_id == participant_id:
                return p
        return None

    def attestation_by(self, attestor_id):
        for a in self.attestations:
            if a.attestor_id == attestor_id:
                return a
        return None

    @property
    def is_closed(self):
        return self.status in CLOSED_STATUSES


class FlakeParticipant(db.Model):
    __tablename__ = 'flake_participants'

    id = Column(Integer, primary_key=True)
    flake_pk = Column(Integer, ForeignKey('flakes.id', ondelete='CASCADE'), nullable=False, index=True)
    participant_id = Column(String(64), nullable=False, index=True)
    wallet_address = Column(String(42), nullable=True)
    stake_amount = Column(String(78), nullable=False)
    status = Column(Enum(ParticipantStatus), nullable=False, default=ParticipantStatus.pending)
    deposit_tx_hash = Column(String(66), nullable=True)
    refund_tx_hash = Column(String(66), nullable=True)
    winner = Column(Boolean, nullable=False, default=False)

    flake = relationship('Flake', back_populates='participants')

    __table_args__ = (
        UniqueConstraint('flake_pk', 'participant_id', name='uq_flake_participant'),
    )


class FlakeEvidence(db.Model):
    __tablename__ = 'flake_evidence'

    id = Column(Integer, primary_key=True)
    flake_pk = Column(Integer, ForeignKey('flakes.id', ondelete='CASCADE'), nullable=False, index=True)
    cid = Column(String(128), nullable=False)
    uploader_id = Column(String(64), nullable=False)
    mime_type = Column(String(128), nullable=False)
    size_bytes = Column(Integer, nullable=False)
    title = Column(String(255), nullable=True)
    uploaded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    flake = relationship('Flake', back_populates='evidence')


class FlakeAttestation(db.Model):
    __tablename__ = 'flake_attestations'

    id = Column(Integer, primary_key=True)
    flake_pk = Column(Integer, ForeignKey('flakes.id', ondelete='CASCADE'), nullable=False, index=True)
    attestor_id = Column(String(64), nullable=False)
    verdict = Column(Enum(Verdict), nullable=False)
    notes = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    ai_score = Column(Integer, nullable=True)
    ai_rationale = Column(Text, nullable=True)

    flake = relationship('Flake', back_populates='attestations')

    __table_args__ = (
        UniqueConstraint('flake_pk', 'attestor_id', name='uq_flake_attestor'),
    )
