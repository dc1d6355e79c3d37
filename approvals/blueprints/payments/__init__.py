"""
approvals/blueprints/payments/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose payments_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import payments_bp  # noqa: F401
