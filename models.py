from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value is not None else None


class Student(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    index_number = db.Column(db.String(40), unique=True, index=True, nullable=False)
    student_class = db.Column(db.String(40), nullable=False)
    year = db.Column(db.String(20), nullable=False)
    has_voted = db.Column(db.Boolean, default=False, nullable=False)
    registered_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self, private=True):
        data = {
            "id": self.id,
            "name": self.name,
            "indexNumber": self.index_number,
            "class": self.student_class,
            "year": self.year,
        }
        if private:
            data["hasVoted"] = self.has_voted
            data["registeredAt"] = isoformat(self.registered_at)
        return data


class Position(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    candidates = db.relationship("Candidate", back_populates="position", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": isoformat(self.created_at),
        }


class Candidate(db.Model):
    __table_args__ = (
        db.UniqueConstraint("id_number", "position_id", name="uq_candidate_position"),
        db.CheckConstraint("votes >= 0", name="ck_candidate_votes_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    # Index number of the student standing for election
    id_number = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    position_id = db.Column(db.Integer, db.ForeignKey("position.id"), nullable=False)
    year = db.Column(db.String(20), nullable=False)
    image = db.Column(db.String(255), nullable=False)
    votes = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    position = db.relationship("Position", back_populates="candidates")

    @property
    def position_name(self):
        return self.position.name if self.position is not None else None

    def to_dict(self, with_votes=True):
        data = {
            "id": self.id,
            "idNumber": self.id_number,
            "name": self.name,
            "position": self.position_name,
            "year": self.year,
            "image": self.image,
        }
        if with_votes:
            data["votes"] = self.votes
        return data


class Admin(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "createdAt": isoformat(self.created_at),
        }


class ElectionSettings(db.Model):
    """The single row holding the voting window."""

    id = db.Column(db.Integer, primary_key=True)
    start_datetime = db.Column(db.DateTime, nullable=False)
    end_datetime = db.Column(db.DateTime, nullable=False)
    voters_auth_key = db.Column(db.String(120), nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @classmethod
    def current(cls):
        return cls.query.order_by(cls.id).first()

    def to_dict(self, with_key=False):
        data = {
            "startDateTime": isoformat(self.start_datetime),
            "endDateTime": isoformat(self.end_datetime),
        }
        if with_key:
            data["votersAuthKey"] = self.voters_auth_key
        return data
