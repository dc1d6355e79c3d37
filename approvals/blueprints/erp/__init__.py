"""
ERP bridge blueprint package.

This file just exposes the Blueprint object to be imported in approvals.__init__.
The actual routes are in routes.py.
"""

from .routes import erp_bp  # noqa: F401
