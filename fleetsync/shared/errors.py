"""
Errors raised across the broadcast layer.

Only client-facing problems are exceptions. Query failures and payloads that
fail validation are returned as values so one bad cycle never interrupts the
others.
"""


class FleetSyncError(Exception):
    """Base class for errors raised by this package."""


class ReportRequestError(FleetSyncError, ValueError):
    """A report request carried unparseable or out-of-range filter parameters."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_payload(self) -> dict:
        payload = {"message": self.message}
        if self.field:
            payload["field"] = self.field
        return payload


class UnknownResourceError(FleetSyncError, KeyError):
    """A client named a room or model that the broadcast layer does not serve."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown resource '{self.name}'"
