# livetrack/errors.py
"""
Error taxonomy for the assignment and tracking service.

"No candidate partner" is deliberately absent: an unassigned order is a
valid outcome and is reported as ``None``.
"""


class TrackingError(Exception):
    """Base class for all service errors."""


class NotFound(TrackingError):
    """An order or partner identifier could not be resolved."""


class PreconditionFailed(TrackingError):
    """Invalid input (e.g. non-finite coordinates); nothing was mutated."""


class Unauthorized(TrackingError):
    """The caller does not own the order's position stream."""


class DegradedLookup(TrackingError):
    """The geospatial candidate search is unavailable."""
