# /leadflow/flows/errors.py

# Failure taxonomy of the flow engine. The engine converts each of these into
# an execution outcome; none of them escape FlowEngine.handle_event.


class FlowError(Exception):
    """Base class for flow engine errors."""


class FlowConfigurationError(FlowError):
    """The flow graph or a node config cannot be executed. Never retried."""


class DeliveryError(FlowError):
    """An outbound side effect (message, webhook) failed. Retried with backoff."""


class StaleExecutionError(FlowError):
    """The execution changed under us (version or lease conflict)."""


class TenantIsolationError(FlowError):
    """An event referenced a record owned by a different company."""

    def __init__(self, message: str, company_id: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.company_id = company_id
        self.details = details or {}
