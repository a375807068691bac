"""
Core modules for Token Meter.

Pure computation over usage records: validation, fingerprinting, time
bucketing, querying, analytics, projection, retention and pricing.
"""
