"""
Command-line interface for Token Meter.
"""
