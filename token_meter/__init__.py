"""
Token Meter.

Usage record store and analytics engine for metered LLM API calls.
"""

__version__ = "0.1.0"
