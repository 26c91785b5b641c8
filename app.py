from datetime import datetime, timezone
from functools import wraps

import click
from flask import Flask, jsonify, request, session
from flask_cors import CORS
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

# --- Database and App Setup ---
from models import Admin, Candidate, ElectionSettings, Position, Student, db, utcnow
from voting import (
    InvalidRequest,
    VotingError,
    cast_ballot,
    check_eligibility,
    current_window,
    parse_id,
)

app = Flask(__name__)

# --- Configuration ---
app.config.from_object("config")
app.logger.setLevel(app.config["LOG_LEVEL"])

# Initialize database
db.init_app(app)

# The voting frontend is served from its own origin
CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}}, supports_credentials=True)


# --- Helper Functions ---
def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return data


def require_fields(data, *names, message="All fields are required", allow_int=False):
    values = []
    for name in names:
        value = data.get(name)
        if isinstance(value, str):
            value = value.strip()
        elif not (allow_int and isinstance(value, int) and not isinstance(value, bool)):
            raise InvalidRequest(message)
        if value == "":
            raise InvalidRequest(message)
        values.append(value)
    return values


def parse_datetime(value):
    """Parse an ISO 8601 string to naive UTC."""
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        raise InvalidRequest("Invalid date format") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def group_by_position(candidates, with_votes):
    grouped = {}
    for candidate in candidates:
        grouped.setdefault(candidate.position_name, []).append(candidate.to_dict(with_votes=with_votes))
    return grouped


def candidates_by_position():
    return (
        Candidate.query.join(Position)
        .order_by(Position.name, Candidate.name)
        .all()
    )


def get_position(name):
    position = Position.query.filter_by(name=name).first()
    if position is None:
        raise InvalidRequest(f"Position '{name}' does not exist")
    return position


def get_candidate(candidate_id):
    parsed = parse_id(candidate_id)
    candidate = db.session.get(Candidate, parsed) if parsed is not None else None
    if candidate is None:
        raise VotingError("Candidate not found", status_code=404)
    return candidate


def candidate_fields(data, image_required=True):
    id_number, name, position_name, year = require_fields(
        data, "idNumber", "name", "position", "year",
        message="All fields are required, including an image" if image_required else "All fields are required",
    )
    image = data.get("image") or ""
    if not isinstance(image, str):
        raise InvalidRequest("Image must be a path string")
    image = image.strip()
    if image_required and not image:
        raise InvalidRequest("All fields are required, including an image")

    if Student.query.filter_by(index_number=id_number).first() is None:
        raise InvalidRequest("ID number must match an existing student's index number")

    return {
        "id_number": id_number,
        "name": name,
        "position": get_position(position_name),
        "year": year,
        "image": image,
    }


def current_admin():
    admin_id = session.get("admin_id")
    return db.session.get(Admin, admin_id) if admin_id is not None else None


# --- Decorators ---
def admin_login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_admin() is None:
            return jsonify(message="You must be logged in as an administrator."), 401
        return f(*args, **kwargs)
    return decorated_function


# --- Error Handlers ---
@app.errorhandler(VotingError)
def handle_voting_error(exc):
    return jsonify(message=exc.message), exc.status_code


@app.errorhandler(SQLAlchemyError)
def handle_storage_error(exc):
    db.session.rollback()
    app.logger.exception("Storage error while handling %s %s", request.method, request.path)
    return jsonify(message="Server error"), 500


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    return jsonify(message=exc.description), exc.code


# --- Student Routes ---
@app.route("/api/students/login", methods=["POST"])
def student_login():
    data = json_body()
    (index_number,) = require_fields(data, "indexNumber", message="Index number is required")

    student = check_eligibility(index_number, current_window(), by="index")
    session["student_id"] = student.id

    return jsonify(message="Login successful", student=student.to_dict(private=False))


@app.route("/api/students/candidates")
def list_candidates():
    grouped = group_by_position(candidates_by_position(), with_votes=False)
    for entries in grouped.values():
        for entry in entries:
            del entry["idNumber"], entry["year"]
    return jsonify(grouped)


@app.route("/api/students/vote", methods=["POST"])
def vote():
    data = json_body()
    student_id = data.get("studentId") or session.get("student_id")
    votes = data.get("votes")
    if not student_id or not isinstance(votes, dict):
        raise InvalidRequest("Student ID and votes are required")

    receipt = cast_ballot(student_id, votes, current_window())

    # Clear session data after successful vote
    session.pop("student_id", None)
    app.logger.info("Vote recorded for student %s", receipt.student_id)

    return jsonify(message="Vote submitted successfully")


# --- Admin Routes ---
@app.route("/api/admins/login", methods=["POST"])
def admin_login():
    data = json_body()
    email, password = require_fields(data, "email", "password", message="Email and password are required")

    admin = Admin.query.filter_by(email=email.lower()).first()
    if admin is None or not check_password_hash(admin.password_hash, password):
        raise VotingError("Invalid email or password", status_code=401)

    session["admin_id"] = admin.id
    app.logger.info("Admin %s logged in", admin.email)
    return jsonify(message="Login successful", admin=admin.to_dict())


@app.route("/api/admins/logout", methods=["POST"])
def admin_logout():
    session.pop("admin_id", None)
    return jsonify(message="You have been logged out.")


@app.route("/api/admins/change-password", methods=["PUT"])
@admin_login_required
def change_password():
    data = json_body()
    current_password, new_password = require_fields(
        data, "currentPassword", "newPassword",
        message="Current password and new password are required",
    )

    admin = current_admin()
    if not check_password_hash(admin.password_hash, current_password):
        raise VotingError("Current password is incorrect", status_code=401)

    admin.password_hash = generate_password_hash(new_password)
    db.session.commit()
    return jsonify(message="Password changed successfully")


@app.route("/api/admins/stats")
@admin_login_required
def stats():
    total = db.session.scalar(db.select(func.count(Student.id)))
    voted = db.session.scalar(db.select(func.count(Student.id)).where(Student.has_voted.is_(True)))
    return jsonify(totalVoters=total, voted=voted, notVoted=total - voted)


@app.route("/api/admins/students")
@admin_login_required
def list_students():
    students = Student.query.order_by(Student.name).all()
    return jsonify([student.to_dict() for student in students])


def new_student(entry):
    name, index_number, student_class, year = require_fields(entry, "name", "indexNumber", "class", "year")
    return Student(name=name, index_number=index_number, student_class=student_class, year=year, has_voted=False)


@app.route("/api/admins/add-voter", methods=["POST"])
@admin_login_required
def add_voter():
    student = new_student(json_body())
    if Student.query.filter_by(index_number=student.index_number).first():
        raise InvalidRequest("Student with this index number already exists")

    db.session.add(student)
    db.session.commit()
    return jsonify(message="Voter added successfully", student=student.to_dict()), 201


@app.route("/api/admins/add-voters", methods=["POST"])
@admin_login_required
def add_voters():
    entries = request.get_json(silent=True)
    if not isinstance(entries, list):
        raise InvalidRequest("Expected a list of voters")

    if not all(isinstance(entry, dict) for entry in entries):
        raise InvalidRequest("Each voter must be a JSON object")
    # Reject the whole batch on any bad row before touching the session
    students = [new_student(entry) for entry in entries]

    added, skipped = [], []
    seen = {index for (index,) in db.session.execute(db.select(Student.index_number))}
    for student in students:
        if student.index_number in seen:
            skipped.append(student.index_number)
            continue
        seen.add(student.index_number)
        added.append(student)

    db.session.add_all(added)
    db.session.commit()
    app.logger.info("Imported %d voter(s), skipped %d", len(added), len(skipped))
    return jsonify(message="Voters imported", added=len(added), skipped=skipped), 201


@app.route("/api/admins/students", methods=["DELETE"])
@admin_login_required
def delete_students():
    ids = json_body().get("ids")
    if not isinstance(ids, list) or not ids:
        raise InvalidRequest("A list of student IDs is required")
    parsed = [parse_id(value) for value in ids]
    if None in parsed:
        raise InvalidRequest("Invalid student ID")

    window = current_window()
    if window is not None and window.is_open(utcnow()):
        raise VotingError("Voters cannot be deleted while voting is open", status_code=409)

    deleted = Student.query.filter(Student.id.in_(parsed)).delete(synchronize_session=False)
    db.session.commit()
    return jsonify(message="Voters deleted", deleted=deleted)


@app.route("/api/admins/positions")
@admin_login_required
def list_positions():
    positions = Position.query.order_by(Position.name).all()
    return jsonify([position.to_dict() for position in positions])


@app.route("/api/admins/add-position", methods=["POST"])
@admin_login_required
def add_position():
    (name,) = require_fields(json_body(), "name", message="Position name is required")
    if Position.query.filter_by(name=name).first():
        raise InvalidRequest(f"Position '{name}' already exists")

    position = Position(name=name)
    db.session.add(position)
    db.session.commit()
    return jsonify(message="Position added successfully", position=position.to_dict()), 201


@app.route("/api/admins/delete-position", methods=["DELETE"])
@admin_login_required
def delete_position():
    (position_id,) = require_fields(json_body(), "positionId", message="Position ID is required", allow_int=True)
    parsed = parse_id(position_id)
    position = db.session.get(Position, parsed) if parsed is not None else None
    if position is None:
        raise VotingError("Position not found", status_code=404)
    if position.candidates:
        raise InvalidRequest("Remove the candidates for this position first")

    db.session.delete(position)
    db.session.commit()
    return jsonify(message="Position deleted successfully")


@app.route("/api/admins/add-candidate", methods=["POST"])
@admin_login_required
def add_candidate():
    fields = candidate_fields(json_body())
    existing = Candidate.query.filter_by(id_number=fields["id_number"], position=fields["position"]).first()
    if existing:
        raise InvalidRequest("Candidate already exists for this position")

    candidate = Candidate(votes=0, **fields)
    db.session.add(candidate)
    db.session.commit()
    return jsonify(message="Candidate added successfully", candidate=candidate.to_dict()), 201


@app.route("/api/admins/candidate/<candidate_id>")
@admin_login_required
def show_candidate(candidate_id):
    return jsonify(get_candidate(candidate_id).to_dict())


@app.route("/api/admins/update-candidate", methods=["PUT"])
@admin_login_required
def update_candidate():
    data = json_body()
    candidate = get_candidate(data.get("id"))
    fields = candidate_fields(data, image_required=False)

    existing = Candidate.query.filter(
        Candidate.id_number == fields["id_number"],
        Candidate.position_id == fields["position"].id,
        Candidate.id != candidate.id,
    ).first()
    if existing:
        raise InvalidRequest("Another candidate already exists for this position with the same ID number")

    if not fields["image"]:
        del fields["image"]
    for key, value in fields.items():
        setattr(candidate, key, value)
    db.session.commit()
    return jsonify(message="Candidate updated successfully", candidate=candidate.to_dict())


@app.route("/api/admins/delete-candidate", methods=["DELETE"])
@admin_login_required
def delete_candidate():
    (candidate_id,) = require_fields(json_body(), "candidateId", message="Candidate ID is required", allow_int=True)
    candidate = get_candidate(candidate_id)

    db.session.delete(candidate)
    db.session.commit()
    return jsonify(message="Candidate deleted successfully")


@app.route("/api/admins/results")
@admin_login_required
def results():
    return jsonify(group_by_position(candidates_by_position(), with_votes=True))


@app.route("/api/admins/reset-votes", methods=["PUT"])
@admin_login_required
def reset_votes():
    db.session.execute(update(Candidate).values(votes=0))
    db.session.execute(update(Student).values(has_voted=False))
    db.session.commit()
    app.logger.warning("All votes reset by admin %s", session.get("admin_id"))
    return jsonify(message="All candidate votes and student voting status reset successfully")


# --- Settings Routes ---
@app.route("/api/settings", methods=["GET"])
def get_settings():
    settings = ElectionSettings.current()
    if settings is None:
        raise VotingError("No settings found", status_code=404)
    return jsonify(
        message="Settings retrieved successfully",
        settings=settings.to_dict(with_key=current_admin() is not None),
    )


@app.route("/api/settings", methods=["POST"])
@admin_login_required
def save_settings():
    start, end, auth_key = require_fields(json_body(), "startDateTime", "endDateTime", "votersAuthKey")
    start, end = parse_datetime(start), parse_datetime(end)
    if start >= end:
        raise InvalidRequest("End date must be after start date")

    settings = ElectionSettings.current()
    if settings is None:
        settings = ElectionSettings(start_datetime=start, end_datetime=end, voters_auth_key=auth_key)
        db.session.add(settings)
    else:
        settings.start_datetime = start
        settings.end_datetime = end
        settings.voters_auth_key = auth_key
    db.session.commit()

    app.logger.info("Voting window set to %s - %s", start.isoformat(), end.isoformat())
    return jsonify(message="Settings saved successfully", settings=settings.to_dict(with_key=True))


# --- CLI Commands ---
@app.cli.command("init-db")
def init_db_command():
    """Create the database tables."""
    db.create_all()
    click.echo("Database initialized.")


@app.cli.command("create-admin")
@click.argument("name")
@click.argument("email")
@click.password_option()
def create_admin_command(name, email, password):
    """Create an administrator account."""
    email = email.strip().lower()
    if Admin.query.filter_by(email=email).first():
        click.echo(f"Admin with email '{email}' already exists")
        return

    db.session.add(Admin(name=name, email=email, password_hash=generate_password_hash(password)))
    db.session.commit()
    click.echo(f"Admin created successfully: {name} ({email})")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()  # Create database tables from models.py
    app.run(host="0.0.0.0", port=5000, debug=True)
