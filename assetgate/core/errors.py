"""
Registry error taxonomy.
A raised error always means the operation had no effect.
"""


class RegistryError(Exception):
    """Base class for every rejected registry operation."""


# State conflicts

class AlreadyExists(RegistryError):
    pass


class AssetNotFound(RegistryError):
    pass


# Authorization errors

class NotOwnerOrAdmin(RegistryError):
    """Caller is neither the owner nor holds a current grant on the asset."""


class NotOwner(RegistryError):
    """Caller is not the current owner (ownership is not delegable)."""


# Validation errors

class ValidationFailed(RegistryError):
    pass


class BatchError(ValidationFailed):
    """Parallel input arrays are empty, mismatched or over the cap."""


class TemporalPolicyError(ValidationFailed):
    """Role and duration disagree (temporary without duration, or the reverse)."""
