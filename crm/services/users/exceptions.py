"""
User service domain exceptions.
"""


class UserServiceError(Exception):
    """Base exception for user service errors"""
    pass


class InvalidUserDataError(UserServiceError):
    """Email, region or trial length failed validation"""
    pass


class PartnerInactiveError(UserServiceError):
    """Deactivated partners cannot provision new users"""
    pass
