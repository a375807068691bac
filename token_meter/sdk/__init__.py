"""
SDK for Token Meter.

Reports LLM usage from application code.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
