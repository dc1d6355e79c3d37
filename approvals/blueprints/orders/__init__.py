"""
approvals/blueprints/orders/__init__.py

Blueprint package export (orders and quotations share the acceptance routes).
"""

from __future__ import annotations

from .routes import orders_bp, quotations_bp  # noqa: F401
