"""Errors raised by the fleet controller."""


class FleetControllerError(Exception):
    """Base class for fleet controller errors."""


class ProviderError(FleetControllerError):
    """The compute provider could not be reached or rejected a request."""


class TemplateNotFoundError(FleetControllerError):
    """No template matches the requested name or label."""


class CapacityExhaustedError(FleetControllerError):
    """A global or per-image instance cap refused the reservation."""


class LaunchTimeoutError(FleetControllerError):
    """An instance did not reach the running state in time."""
