"""
Infrastructure module: Redis connectivity and log correlation.
"""
