"""
Subscription tracking core: reconciliation of sighted subscriptions and
scheduling of renewal / price / trial / unused alerts.
"""

from __future__ import annotations

__version__ = "0.1.0"
