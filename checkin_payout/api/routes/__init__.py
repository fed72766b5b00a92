"""
API route modules.
"""

from . import auth, checkins, payouts

__all__ = ["auth", "checkins", "payouts"]
