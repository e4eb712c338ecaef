from flask import Blueprint, request, jsonify, g

from security import login as login_flow
from security import two_factor
from security.errors import ValidationError
from utils.auth_context import client_ip, login_required, user_agent
from routes.auth import login_outcome_response

two_factor_bp = Blueprint("two_factor", __name__, url_prefix="/2fa")


@two_factor_bp.get("/status")
@login_required
def status():
    return jsonify(two_factor.two_factor_status(g.user)), 200


@two_factor_bp.post("/enable")
@login_required
def enable():
    data = request.get_json(silent=True) or {}
    payload = two_factor.start_enrollment(g.user, data.get("method"))
    return jsonify(payload), 200


@two_factor_bp.post("/verify")
@login_required
def verify():
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    if not code:
        raise ValidationError("Code is required")
    return jsonify(two_factor.confirm_enrollment(g.user, code)), 200


@two_factor_bp.post("/disable")
@login_required
def disable():
    data = request.get_json(silent=True) or {}
    two_factor.disable(g.user, data.get("password") or "", data.get("method"))
    return jsonify(success=True, message="Two-factor authentication disabled"), 200


@two_factor_bp.post("/backup-codes/regenerate")
@login_required
def regenerate_backup_codes():
    data = request.get_json(silent=True) or {}
    codes = two_factor.regenerate_backup_codes(g.user, data.get("password") or "", data.get("code") or "")
    return jsonify(backup_codes=codes), 200


@two_factor_bp.post("/verify-login")
def verify_login():
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    code = (data.get("code") or "").strip()
    if not isinstance(user_id, int) or not code:
        raise ValidationError("user_id and code are required")

    outcome = login_flow.complete_two_factor_login(
        user_id,
        code,
        data.get("temp_token"),
        ip=client_ip(),
        user_agent=user_agent(),
    )
    return login_outcome_response(outcome)
