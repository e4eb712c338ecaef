from flask import Blueprint, request, jsonify, g

from models.session import Session
from security import session as sessions
from security.errors import NotFoundError
from utils.audit import log_event
from utils.auth_context import login_required

sessions_bp = Blueprint("sessions", __name__, url_prefix="/sessions")


def _flag(value) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


@sessions_bp.get("")
@login_required
def list_sessions():
    rows = sessions.list_sessions(
        g.user.id,
        include_history=_flag(request.args.get("include_history")),
        current_session_id=g.session.id,
    )
    return jsonify(sessions=rows, total=len(rows)), 200


@sessions_bp.get("/timeout")
@login_required
def timeout_status():
    return jsonify(sessions.session_timeout_status(g.session)), 200


@sessions_bp.delete("/<int:session_id>")
@login_required
def terminate_session(session_id: int):
    sess = Session.query.filter_by(id=session_id, user_id=g.user.id).first()
    if sess is None:
        raise NotFoundError("Session not found")

    terminated = sessions.terminate(sess.id, sessions.REASON_TERMINATED_BY_USER)
    if terminated:
        log_event("SESSION_TERMINATED", user_id=g.user.id, entity="session", entity_id=sess.id)
    return jsonify(success=True, already_terminated=not terminated), 200


@sessions_bp.post("/terminate-others")
@login_required
def terminate_others():
    count = sessions.terminate_all_except(g.user.id, g.session.id, sessions.REASON_TERMINATED_BY_USER)
    log_event("SESSIONS_TERMINATED_OTHERS", user_id=g.user.id, metadata={"count": count})
    return jsonify(success=True, terminated=count), 200
