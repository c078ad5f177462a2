"""
Provider quota tracking.

The tracker itself lives in ``storyloop.core.quota.tracker``; only the
models are re-exported here so routing can import them without pulling in
the HTTP clients.
"""

from .models import ProviderQuota, QuotaStatus, QuotaType

__all__ = ["ProviderQuota", "QuotaStatus", "QuotaType"]
