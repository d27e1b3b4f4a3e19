from __future__ import annotations

import os
from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.pool import StaticPool

db = SQLAlchemy()


def get_database_uri() -> str:
    """
    Deployments set DATABASE_URL (Postgres); local runs and the CLI fall back
    to a sqlite file next to the working directory.
    """
    url = os.getenv("DATABASE_URL", "").strip()
    if not url:
        return "sqlite:///kiosk_licenses.db"

    # SQLAlchemy only knows the postgresql:// scheme
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def engine_options(uri: str) -> Dict[str, Any]:
    if not uri.startswith("sqlite"):
        return {"pool_pre_ping": True}

    options: Dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 15}}
    if uri in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        options["poolclass"] = StaticPool
    return options


def init_db(app: Flask, uri: str) -> None:
    app.config["SQLALCHEMY_DATABASE_URI"] = uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options(uri)

    db.init_app(app)
    with app.app_context():
        # models must be registered on the metadata before create_all
        from . import models  # noqa: F401

        db.create_all()
