"""
SDK for AI Chart Analyst.

Provides programmatic access to billed chart analysis, chat and EA generation.
"""

from .analyst import BilledResult, ChartAnalyst, ComprehensiveAnalysis
from .openrouter_client import (
    Completion,
    OpenRouterClient,
    RequestCancelled,
    VendorError,
    VendorTimeoutError,
)

__all__ = [
    "BilledResult",
    "ChartAnalyst",
    "Completion",
    "ComprehensiveAnalysis",
    "OpenRouterClient",
    "RequestCancelled",
    "VendorError",
    "VendorTimeoutError",
]
