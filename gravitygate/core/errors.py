"""Project error hierarchy."""


class GravityGateError(Exception):
    """Base error."""


class UpstreamError(GravityGateError):
    """Raised when an upstream call fails; the message is what retry classification inspects."""


class ConfigurationError(GravityGateError):
    """Raised when an identity lacks a field the upstream protocol requires."""
