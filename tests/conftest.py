import os
import tempfile
from datetime import timedelta

import pytest

# The app reads its database URL at import time
_db_dir = tempfile.mkdtemp(prefix="school-vote-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ["CORS_ORIGINS"] = "http://localhost:5173"

from werkzeug.security import generate_password_hash  # noqa: E402

from app import app as flask_app  # noqa: E402
from models import Admin, Candidate, ElectionSettings, Position, Student, db, utcnow  # noqa: E402


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_student(index_number, name=None, has_voted=False):
    student = Student(
        name=name or f"Student {index_number}",
        index_number=index_number,
        student_class="Science 1",
        year="2025",
        has_voted=has_voted,
    )
    db.session.add(student)
    db.session.commit()
    return student


def make_candidate(student, position, votes=0):
    candidate = Candidate(
        id_number=student.index_number,
        name=student.name,
        position=position,
        year=student.year,
        image=f"/uploads/{student.index_number}.png",
        votes=votes,
    )
    db.session.add(candidate)
    db.session.commit()
    return candidate


def refreshed(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


@pytest.fixture
def election(app):
    now = utcnow()
    settings = ElectionSettings(
        start_datetime=now - timedelta(hours=1),
        end_datetime=now + timedelta(hours=1),
        voters_auth_key="letmein",
    )
    db.session.add(settings)
    db.session.commit()
    return settings


@pytest.fixture
def catalog(app):
    """Two positions with two candidates each, plus a fresh voter."""
    head_boy = Position(name="Head Boy")
    head_girl = Position(name="Head Girl")
    db.session.add_all([head_boy, head_girl])
    db.session.commit()

    kofi = make_candidate(make_student("1001", "Kofi Mensah"), head_boy)
    yaw = make_candidate(make_student("1002", "Yaw Boateng"), head_boy)
    ama = make_candidate(make_student("1003", "Ama Owusu"), head_girl)
    esi = make_candidate(make_student("1004", "Esi Asante"), head_girl)
    voter = make_student("2001", "Abena Voter")

    return {
        "head_boy": head_boy,
        "head_girl": head_girl,
        "kofi": kofi,
        "yaw": yaw,
        "ama": ama,
        "esi": esi,
        "voter": voter,
    }


@pytest.fixture
def admin(app):
    account = Admin(
        name="Election Officer",
        email="officer@school.test",
        password_hash=generate_password_hash("s3cret-pass"),
    )
    db.session.add(account)
    db.session.commit()
    return account


@pytest.fixture
def admin_client(client, admin):
    response = client.post(
        "/api/admins/login",
        json={"email": "officer@school.test", "password": "s3cret-pass"},
    )
    assert response.status_code == 200
    return client
