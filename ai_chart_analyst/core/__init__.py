"""
Core modules for AI Chart Analyst.

This package contains the core functionality for token pricing, the
balance guardrail, analysis parsing and multi-timeframe correlation.
"""
