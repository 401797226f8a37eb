# fleak/services/flake_store.py
"""
Document-level access to the Flake aggregate.

Every write goes through FlakeStore.mutate: the Flake row carries a
version column (SQLAlchemy version_id_col), so two writers racing on the
same Flake cannot both commit. The loser is rolled back and its whole
read-modify-write is replayed against fresh state.
"""

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from fleak.errors import NotFound, Conflict
from fleak.extension.extensions import db
from fleak.models.flake import Flake, FlakeParticipant, FlakeAttestation, utcnow


class FlakeStore:

    @staticmethod
    def _load(flake_id):
        flake = Flake.query.filter_by(flake_id=flake_id).first()
        if not flake:
            raise NotFound("Flake not found", details={"flakeId": flake_id})
        return flake

    @staticmethod
    def create(flake):
        db.session.add(flake)
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise Conflict("Flake could not be stored") from e
        return flake

    @staticmethod
    def get(flake_id):
        return FlakeStore._load(flake_id)

    @staticmethod
    def read(flake_id, fn):
        """Project a Flake into plain values and end the read transaction."""
        try:
            return fn(FlakeStore._load(flake_id))
        finally:
            db.session.rollback()

    @staticmethod
    def mutate(flake_id, fn):
        """
        Apply fn(flake) and commit it atomically.

        fn may raise a FlakeError to abort; nothing is written in that case.
        When fn changes nothing the commit writes nothing either.
        Stale writes are retried up to STORE_MAX_RETRIES times.
        """
        attempts = current_app.config.get("STORE_MAX_RETRIES", 5)
        for attempt in range(1, attempts + 1):
            try:
                flake = FlakeStore._load(flake_id)
                result = fn(flake)
                if db.session.new or db.session.dirty or db.session.deleted:
                    # child-only changes still have to bump the Flake row's version
                    flake.updated_at = utcnow()
                db.session.commit()
                return result
            except StaleDataError:
                db.session.rollback()
                current_app.logger.warning(f"Concurrent update on flake {flake_id}, retry {attempt}/{attempts}")
            except IntegrityError as e:
                db.session.rollback()
                raise Conflict("Concurrent update violated a uniqueness rule") from e
            except Exception:
                db.session.rollback()
                raise
        raise Conflict("Flake is being updated concurrently, try again")

    @staticmethod
    def numeric_id_exists(numeric_id):
        return db.session.query(Flake.id).filter_by(numeric_id=str(numeric_id)).first() is not None

    @staticmethod
    def find_by_status_and_type(statuses, verification_types=None):
        q = Flake.query.filter(Flake.status.in_(list(statuses)))
        if verification_types:
            q = q.filter(Flake.verification_type.in_(list(verification_types)))
        return q.order_by(Flake.deadline.asc()).all()

    @staticmethod
    def find_for_participant(participant_id, statuses=None, verification_types=None):
        q = (Flake.query
             .join(FlakeParticipant, FlakeParticipant.flake_pk == Flake.id)
             .filter(FlakeParticipant.participant_id == participant_id))
        if statuses:
            q = q.filter(Flake.status.in_(list(statuses)))
        if verification_types:
            q = q.filter(Flake.verification_type.in_(list(verification_types)))
        return q.order_by(Flake.deadline.asc()).all()

    @staticmethod
    def find_unattested_for_participant(participant_id, statuses, verification_types):
        attested = (db.session.query(FlakeAttestation.flake_pk)
                    .filter(FlakeAttestation.attestor_id == participant_id))
        q = (Flake.query
             .join(FlakeParticipant, FlakeParticipant.flake_pk == Flake.id)
             .filter(FlakeParticipant.participant_id == participant_id)
             .filter(Flake.status.in_(list(statuses)))
             .filter(Flake.verification_type.in_(list(verification_types)))
             .filter(~Flake.id.in_(attested)))
        return q.order_by(Flake.deadline.asc()).all()

    @staticmethod
    def find_past_deadline(before, statuses):
        return (Flake.query
                .filter(Flake.deadline < before)
                .filter(Flake.status.in_(list(statuses)))
                .order_by(Flake.deadline.asc())
                .all())
