"""Client library for logging API requests to the analytics collector."""

from apilog.client import Analytics, Config, PrivacyLevel
from apilog.middleware import AnalyticsMiddleware

__all__ = [
    "Analytics",
    "AnalyticsMiddleware",
    "Config",
    "PrivacyLevel",
]
