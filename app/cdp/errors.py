"""
Error taxonomy for the identity resolution core.

Single-record and merge operations raise these; batch and sync operations
catch per-record failures and report them as strings in their result.
"""

from __future__ import annotations


class ProfileError(Exception):
    pass


class NotFoundError(ProfileError):
    pass


class ConflictError(ProfileError):
    pass


class StaleCandidateError(ProfileError):
    pass


class IncompleteResolutionError(ProfileError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing resolution for conflict fields: {', '.join(self.missing)}")


class ValidationError(ProfileError, ValueError):
    pass


class UpstreamFetchError(ProfileError, RuntimeError):
    pass


class DetectionCancelled(ProfileError):
    pass
