"""
Domain exceptions.

Routes never build these into responses themselves; ``donorlink.main``
registers one handler per family that maps it to an HTTP status.
"""


class DonorLinkError(Exception):
    """Base class for every error raised by the engine."""


class InvalidInputError(DonorLinkError, ValueError):
    """Malformed caller input (unknown blood group, bad coordinates...)."""


class NotFoundError(DonorLinkError, LookupError):
    """Unknown recipient / donor / hospital / alert / delivery id."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class AlertStateError(DonorLinkError):
    """Operation not allowed in the alert's current state."""

    def __init__(self, alert_id: str, state: str, message: str | None = None):
        super().__init__(message or f"Alert {alert_id} is {state}")
        self.alert_id = alert_id
        self.state = state


class AlertNotActiveError(AlertStateError):
    pass


class AlertExpiredError(AlertStateError):
    pass


class InvalidTransitionError(DonorLinkError):
    """A state move that the transition table does not allow."""

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(f"{entity}: cannot move from {current} to {requested}")
        self.entity = entity
        self.current = current
        self.requested = requested


class ConcurrentUpdateError(DonorLinkError):
    """Compare-and-set kept losing against other writers."""


class GatewayError(DonorLinkError):
    """Raised by channel senders; ``permanent`` decides retry vs dead."""

    permanent = False


class TransientGatewayError(GatewayError):
    permanent = False


class PermanentGatewayError(GatewayError):
    permanent = True
