"""
Error taxonomy for the jukebox.

Control-surface calls raise these synchronously to the caller. Inside the
play loop they drive state transitions (skip-and-retry, restart, fatal
escalation) rather than escaping.
"""


class JukeboxError(Exception):
    """Base class for all jukebox errors."""


class ProcessNotRunning(JukeboxError):
    """A control command targeted a player with no live process."""


class InvalidArgument(JukeboxError, ValueError):
    """Malformed input (e.g. a non-numeric volume). No state was changed."""


class ResourceUnreachable(JukeboxError):
    """The selected song's backing resource is missing or offline."""


class StorageFailure(JukeboxError):
    """A read or write against the store failed."""


class CrashLoop(JukeboxError):
    """The playback process died unexpectedly too many times in a row."""


class SignalDeliveryFailure(JukeboxError):
    """A command could not be delivered to a process that should be alive."""
