"""
Configuration loading for Token Meter.
"""
