from flask import current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from kudimarket.db import db
from kudimarket.errors import PersistenceError


def ok(data=None, code=200):  return jsonify(data or {}), code
def err(error, code=400, **extra):  return jsonify({"error": error, **extra}), code


def commit_or_rollback(ref=None, passthrough=()):
    """Commit the request transaction.

    Exceptions listed in ``passthrough`` are re-raised untouched after the
    rollback so callers can resolve races; any other database failure is
    logged against ``ref`` and surfaced as :class:`PersistenceError`.
    """
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        if passthrough and isinstance(e, passthrough):
            raise
        current_app.logger.exception("commit failed for %s", ref or "<no ref>")
        raise PersistenceError(ref=ref) from e
