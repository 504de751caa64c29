"""Exception types for vigil."""


class VigilError(Exception):
    """Base class for vigil errors."""


class InhibitError(VigilError):
    """An inhibit mechanism failed to acquire or release its resource.

    Recoverable: the daemon logs it and retries on the next transition.
    """


class NoInhibitorAvailable(VigilError):
    """No usable inhibit mechanism was found at startup."""


class DaemonAlreadyRunning(VigilError, RuntimeError):
    """Another daemon already owns the control socket."""


class DaemonError(VigilError):
    """The daemon rejected a client request."""


class InvariantError(VigilError):
    """Internal state became inconsistent. Not recoverable."""
