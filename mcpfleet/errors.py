from __future__ import annotations


class FleetError(Exception):
    pass


class NotFoundError(FleetError):
    pass


class ContainerNotFound(NotFoundError):
    pass


class RecordNotFound(NotFoundError):
    pass


class RuntimeUnavailable(FleetError):
    """Docker endpoint unreachable or the client was never initialized."""


class CreateFailed(FleetError):
    pass


class ImagePullFailed(FleetError):
    pass


class StatsParseError(FleetError):
    pass


class PortRangeExhausted(FleetError):
    pass


class PartialFailure(FleetError):
    """Some items of a bulk operation failed while others succeeded."""

    def __init__(self, message: str, failures: dict[str, str]):
        super().__init__(message)
        self.failures = dict(failures)


class DanglingRecord(FleetError):
    """A configured server references a container that no longer exists."""

    def __init__(self, server_id: str, message: str):
        super().__init__(message)
        self.server_id = server_id


class PortInUse(FleetError):
    pass
