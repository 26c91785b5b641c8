import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import false, select, update
from sqlalchemy.exc import SQLAlchemyError

from models import Candidate, ElectionSettings, Position, Student, db, utcnow

logger = logging.getLogger(__name__)


class VotingError(Exception):
    status_code = 400

    def __init__(self, message, *, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequest(VotingError):
    status_code = 400


class StudentNotFound(VotingError):
    status_code = 404


class AlreadyVoted(VotingError):
    status_code = 403


class VotingWindowClosed(VotingError):
    status_code = 403


class NotConfigured(VotingError):
    status_code = 403


class InvalidCandidate(VotingError):
    status_code = 400


class PositionMismatch(VotingError):
    status_code = 400


@dataclass(frozen=True)
class VotingWindow:
    start: datetime
    end: datetime

    @classmethod
    def from_settings(cls, settings):
        if settings is None:
            return None
        return cls(start=settings.start_datetime, end=settings.end_datetime)

    def is_open(self, now):
        return self.start <= now < self.end


@dataclass(frozen=True)
class BallotReceipt:
    student_id: int
    positions: tuple[str, ...]


def current_window():
    return VotingWindow.from_settings(ElectionSettings.current())


def parse_id(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def check_eligibility(student_identifier, window, now=None, *, by="id"):
    if by == "index":
        student = Student.query.filter_by(index_number=str(student_identifier).strip()).first()
    elif by == "id":
        student_id = parse_id(student_identifier)
        student = db.session.get(Student, student_id) if student_id is not None else None
    else:
        raise ValueError(f"unknown student lookup {by!r}")

    if student is None:
        raise StudentNotFound("Student not found" if by == "id" else "Invalid index number")
    if student.has_voted:
        raise AlreadyVoted("You have already voted")

    if window is None:
        raise NotConfigured("Voting has not been configured yet")
    if not window.is_open(now or utcnow()):
        raise VotingWindowClosed("Voting is not currently open")

    return student


def validate_ballot(selections):
    if not isinstance(selections, Mapping):
        raise InvalidRequest("Votes must map each position to a candidate")

    validated = []
    for position, candidate_id in selections.items():
        # Abstention
        if candidate_id is None or candidate_id == "":
            continue

        parsed = parse_id(candidate_id)
        candidate = db.session.get(Candidate, parsed) if parsed is not None else None
        if candidate is None:
            raise InvalidCandidate(f"Invalid candidate for {position}")
        if candidate.position_name != position:
            raise PositionMismatch(f"Candidate does not stand for {position}")

        validated.append((candidate, position))
    return validated


def apply_votes(pairs, student):
    """Flip the student's flag and add one vote per pair, all or nothing."""
    student_id = student.id
    try:
        claimed = db.session.execute(
            update(Student)
            .where(Student.id == student_id, Student.has_voted == false())
            .values(has_voted=True)
        )
        if claimed.rowcount != 1:
            db.session.rollback()
            raise AlreadyVoted("You have already voted")

        for candidate, position in pairs:
            counted = db.session.execute(
                update(Candidate)
                .where(
                    Candidate.id == candidate.id,
                    Candidate.position_id == select(Position.id).where(Position.name == position).scalar_subquery(),
                )
                .values(votes=Candidate.votes + 1)
                .execution_options(synchronize_session=False)
            )
            if counted.rowcount != 1:
                # Removed or moved to another position since validation
                db.session.rollback()
                raise InvalidCandidate(f"Invalid candidate for {position}")

        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Tally failed for student %s; rolled back", student_id)
        raise


def cast_ballot(student_id, selections, window, now=None):
    logger.debug("Ballot received for student %s", student_id)
    try:
        student = check_eligibility(student_id, window, now)
        logger.debug("Student %s is eligible", student.id)

        pairs = validate_ballot(selections)
        logger.debug("Ballot for student %s validated: %d selection(s)", student.id, len(pairs))

        apply_votes(pairs, student)
    except VotingError as exc:
        logger.info("Ballot for student %s rejected: %s", student_id, exc.message)
        raise

    logger.info("Ballot for student %s tallied", student.id)
    return BallotReceipt(student_id=student.id, positions=tuple(position for _, position in pairs))
