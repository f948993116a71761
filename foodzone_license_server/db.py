import os
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def get_database_uri() -> str:
    """
    The license database is the only system of record: bindings, audit
    attempts and verification logs all live there, and nothing is cached
    in process. A single embedded sqlite file next to the server is enough
    for one license service instance, and its transactions serialise the
    guarded bind UPDATE. Point DATABASE_URL at Postgres when several
    instances share the store ('postgres://' is rewritten for SQLAlchemy).
    """
    url = os.getenv("DATABASE_URL", "").strip()

    if not url:
        return "sqlite:///foodzone_license.db"

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    return url
