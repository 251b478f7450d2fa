from functools import wraps
from flask import jsonify
from flask_login import current_user

_ERRORS = {
    401: ("unauthorized", "Please sign in."),
    403: ("forbidden", "You do not have access to this action."),
    404: ("not_found", "The requested record was not found."),
}


def _abort_smart(code: int):
    # JSON-only service: same envelope as billing errors
    err, message = _ERRORS[code]
    return jsonify({"ok": False, "error": {"code": err, "message": message}}), code


def login_required_json(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return _abort_smart(401)
        return fn(*args, **kwargs)
    return _wrap


def admin_required(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return _abort_smart(401)
        if not getattr(current_user, "is_admin", False):
            return _abort_smart(403)
        return fn(*args, **kwargs)
    return _wrap
