"""
Stats service domain exceptions.
"""


class StatsServiceError(Exception):
    """Base exception for reporting errors"""
    pass
