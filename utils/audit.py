import json
from flask import has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog
from utils.logger import get_logger, request_id_var

logger = get_logger(__name__)


def _request_origin():
    if not has_request_context():
        return None, None
    ip = request.remote_addr
    user_agent = request.headers.get("User-Agent") or None
    return ip, user_agent[:255] if user_agent else None


def log_event(action: str, user_id=None, entity=None, entity_id=None, metadata=None):
    """
    Append an audit row and mirror it to the structured log. A failed
    write is logged and never interrupts the caller.
    """
    ip, user_agent = _request_origin()
    logger.info("audit", action=action, user_id=user_id, entity=entity, entity_id=entity_id)

    row = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id_var.get(),
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("audit_write_failed", action=action, user_id=user_id, error=str(exc))
