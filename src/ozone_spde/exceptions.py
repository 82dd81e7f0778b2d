"""Exception hierarchy for OZONE-SPDE."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class OzoneSpdeError(Exception):
    """Base class for all package errors.

    Parameters
    ----------
    message : str
        Human readable description
    fold : int, optional
        Cross-validation fold the error belongs to, if any
    """

    def __init__(self, message: str, fold: Optional[int] = None):
        self.fold = fold
        if fold is not None:
            message = f"[fold {fold}] {message}"
        super().__init__(message)


class ConfigurationError(OzoneSpdeError, ValueError):
    """Invalid configuration value."""


class DataValidationError(OzoneSpdeError, ValueError):
    """Input table is missing columns or breaks a data invariant."""


class InsufficientSpatialSupportError(OzoneSpdeError):
    """Training coordinates cannot support a triangulated mesh."""


class FitFailedError(OzoneSpdeError):
    """The inference engine could not produce a fit."""


class FoldTimeoutError(OzoneSpdeError):
    """A fold exceeded its time allowance."""


@dataclass
class FoldFailure:
    """Record of a fold that did not produce metrics.

    Attributes
    ----------
    fold : int
        Fold index (1-based)
    error_type : str
        Exception class name
    message : str
        Exception message
    """
    fold: int
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, fold: int, exc: BaseException) -> "FoldFailure":
        return cls(fold=fold, error_type=type(exc).__name__, message=str(exc))
