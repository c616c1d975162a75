"""Errors raised by lifecycle operations.

Each error carries a machine-readable ``reason`` and the HTTP status the API
answers with. Directory and process-control failures have no class here:
they are logged where they happen and never reach a caller.
"""


class LabError(Exception):
    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class ValidationError(LabError):
    status_code = 400
    reason = "invalid_request"


class NodeNotFound(LabError):
    status_code = 404
    reason = "node_not_found"

    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class InvalidTransition(LabError):
    status_code = 400
    reason = "invalid_transition"


class ExternalToolFailure(LabError):
    status_code = 500
    reason = "external_tool_failed"


class ResourceExhausted(LabError):
    status_code = 500
    reason = "no_display_slot"


class DisplayNotReady(LabError):
    """The VM started but its VNC server never became connectable."""

    status_code = 500
    reason = "display_not_ready"
