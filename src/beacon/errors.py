from __future__ import annotations


class BeaconError(Exception):
    """Base class for programmer-facing errors.

    Operational failures (probe timeouts, refused writes, failed strategies)
    are reported through result objects instead.
    """


class UnknownEndpointError(BeaconError, KeyError):
    pass


class UnknownStrategyError(BeaconError, KeyError):
    pass


class InvalidTransitionError(BeaconError):
    def __init__(self, endpoint_key: str, current: str, target: str) -> None:
        super().__init__(f"{endpoint_key}: cannot move from {current} to {target}")
        self.endpoint_key = endpoint_key
        self.current = current
        self.target = target
