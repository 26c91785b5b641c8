import os

# Security key
SECRET_KEY = os.getenv("SECRET_KEY", "devkey")

# Database (SQLite by default, any SQLAlchemy URL works)
SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///votes.db")
SQLALCHEMY_TRACK_MODIFICATIONS = False

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Session cookie (admin and student logins)
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = "Lax"

# Frontend origins allowed to call the API (comma separated)
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]
