"""
Error taxonomy for RegistryMatch.

Input errors are raised before any work is done, dependency errors wrap
failures of the rule source, region source, or registry store. A resolution
that finds no match is a result, not an error.
"""


class RegistryMatchError(Exception):
    """Base class for all RegistryMatch errors."""

    retryable = False


class InputValidationError(RegistryMatchError, ValueError):
    """Raised for empty names, out-of-range limits and invalid arguments."""


class DependencyError(RegistryMatchError):
    """Raised when a backing store cannot be read; callers may retry."""

    retryable = True


class RuleDefinitionError(RegistryMatchError, ValueError):
    """Raised when a stored normalization rule cannot be parsed."""
