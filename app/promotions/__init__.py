"""
app/promotions/__init__.py
--------------------------
Promotions blueprint: admin management, preview, quote and per-order apply.
URL prefix: /promotions
"""
from flask import Blueprint

promotions = Blueprint('promotions', __name__)

from app.promotions import routes  # noqa: E402, F401
