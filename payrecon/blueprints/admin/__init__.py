from flask import Blueprint

bp = Blueprint("admin_billing", __name__)

from . import routes  # noqa: E402,F401
