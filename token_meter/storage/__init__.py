"""
Storage layer for Token Meter.

Record models, the storage plugin contract and its backends.
"""
