from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from models import db
from utils.logger import get_logger

health_bp = Blueprint("health", __name__)
logger = get_logger(__name__)


@health_bp.get("/health")
def health():
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("health_db_failed", error=str(exc))
        return jsonify(status="degraded", database="unavailable"), 503
    return jsonify(status="ok", database="ok"), 200
