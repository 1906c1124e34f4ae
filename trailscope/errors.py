class TrailscopeError(Exception):
    """Base class for errors raised by trailscope."""


class InvalidAddress(TrailscopeError, ValueError):
    """Input is not a valid IP address, CIDR range or range key."""

    def __init__(self, value: str):
        super().__init__(f"invalid IP address or range: {value!r}")
        self.value = value


class InvalidTarget(TrailscopeError):
    """A target was rejected by policy (e.g. a CIDR that is too broad)."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"invalid target {target!r}: {reason}")
        self.target = target
        self.reason = reason


class MalformedProjection(TrailscopeError):
    """Sub-query projections of the union do not line up across event sources."""


class UnknownSource(TrailscopeError, KeyError):
    """An event source tag or client hint reference type is not recognised."""
