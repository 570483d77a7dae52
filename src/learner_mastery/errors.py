from __future__ import annotations


class LearnerMasteryError(RuntimeError):
    pass


class StoreError(LearnerMasteryError):
    """A profile store read or write failed."""


class ProfileUpdateError(LearnerMasteryError):
    """A quiz session could not be applied to the stored profile."""


__all__ = ["LearnerMasteryError", "ProfileUpdateError", "StoreError"]
