"""
Liveness and database checks.
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from animify import __version__, db
from animify.config import config

bp = Blueprint("health", __name__)


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "service": "animify", "version": __version__, "config": config.to_dict()})


@bp.route("/db-check", methods=["GET"])
def db_check():
    if not db.USE_DB:
        return jsonify({"ok": False, "error": "db_disabled"}), 503
    try:
        latency_ms = db.ping()
    except db.DatabaseError as e:
        print(f"[DB] db-check failed: {e}")
        return jsonify({"ok": False, "error": "db_query_failed"}), 503
    return jsonify({"ok": True, "db": "connected", "latency_ms": latency_ms})
