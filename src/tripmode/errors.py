"""Exception types raised across the tripmode pipeline."""

from __future__ import annotations


class TripModeError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(TripModeError, ValueError):
    """Configuration file missing, unreadable or inconsistent."""


class ReferenceDataError(TripModeError, RuntimeError):
    """The ACS reference sample could not be acquired or loaded. Fatal to the run."""


class BracketLookupError(TripModeError, LookupError):
    """An income bracket has no entry in the bracket median table."""

    def __init__(self, codes, available=None):
        self.codes = sorted(set(codes), key=str)
        self.available = sorted(available) if available is not None else None
        msg = f"No bracket median for bracket code(s) {self.codes}"
        if self.available is not None:
            msg += f"; table covers {self.available}"
        super().__init__(msg)


class SurveyDataError(TripModeError, ValueError):
    """Trip or person input is missing required columns or ends up empty."""


class ModelFitError(TripModeError, RuntimeError):
    """The logistic regression could not be estimated."""
