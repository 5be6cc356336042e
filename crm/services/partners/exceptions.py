"""
Partner service domain exceptions.
"""


class PartnerServiceError(Exception):
    """Base exception for partner service errors"""
    pass


class InvalidPartnerDataError(PartnerServiceError):
    """Email, commission percent or slab schedule failed validation"""
    pass


class PartnerAlreadyExistsError(PartnerServiceError):
    """Another partner already uses this email"""
    pass
