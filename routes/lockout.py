from flask import Blueprint, request, jsonify, g

from security import lockout
from security.errors import ValidationError
from security.rbac import require_roles
from utils.auth_context import login_required, require_two_factor

lockout_bp = Blueprint("lockout", __name__, url_prefix="/admin/lockouts")

_STATUSES = {lockout.STATUS_LOCKED, lockout.STATUS_UNLOCKED, lockout.STATUS_ALL}


def _list_args():
    status = (request.args.get("status") or lockout.STATUS_ALL).strip().lower()
    if status not in _STATUSES:
        raise ValidationError("status must be locked, unlocked or all")
    try:
        page = int(request.args.get("page", 1))
        per_page = int(request.args.get("per_page", 20))
    except ValueError:
        raise ValidationError("page and per_page must be integers")
    return {
        "status": status,
        "search": (request.args.get("search") or "").strip() or None,
        "page": page,
        "per_page": per_page,
    }


@lockout_bp.get("/accounts")
@login_required
@require_roles("ADMIN")
def list_accounts():
    return jsonify(lockout.list_account_lockouts(**_list_args())), 200


@lockout_bp.get("/ips")
@login_required
@require_roles("ADMIN")
def list_ips():
    return jsonify(lockout.list_ip_lockouts(**_list_args())), 200


@lockout_bp.get("/stats")
@login_required
@require_roles("ADMIN")
def stats():
    return jsonify(lockout.lockout_stats()), 200


@lockout_bp.post("/accounts/<int:user_id>/unlock")
@login_required
@require_roles("ADMIN")
@require_two_factor
def unlock_account(user_id: int):
    row = lockout.unlock_account(user_id, g.user.id)
    return jsonify(success=True, lockout=lockout.account_lockout_to_dict(row)), 200


@lockout_bp.post("/ips/<path:ip>/unlock")
@login_required
@require_roles("ADMIN")
@require_two_factor
def unlock_ip(ip: str):
    row = lockout.unlock_ip(ip, g.user.id)
    return jsonify(success=True, lockout=lockout.ip_lockout_to_dict(row)), 200


@lockout_bp.post("/accounts/clear-all")
@login_required
@require_roles("ADMIN")
@require_two_factor
def clear_accounts():
    return jsonify(success=True, cleared=lockout.clear_all_accounts(g.user.id)), 200


@lockout_bp.post("/ips/clear-all")
@login_required
@require_roles("ADMIN")
@require_two_factor
def clear_ips():
    return jsonify(success=True, cleared=lockout.clear_all_ips(g.user.id)), 200
