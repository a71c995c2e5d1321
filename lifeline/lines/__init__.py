from flask import Blueprint

lines_bp = Blueprint("lines", __name__, url_prefix="/lineas")

from lifeline.lines import routes  # noqa: E402,F401
