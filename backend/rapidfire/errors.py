"""Domain exceptions for the rapid fire round.

The HTTP layer maps these onto status codes; the state machine never lets
them escape into the real-time channel.
"""


class RapidFireError(Exception):
    """Base class for every rapid fire error."""


class SourceUnavailable(RapidFireError):
    """The question or roster store could not be reached."""


# ============ Start rejections ============

class StartRejected(RapidFireError):
    """The operator's start command was refused; the round stays idle."""

    reason = "Cannot start the rapid fire round"

    def __init__(self, reason: str | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class RoundNotIdle(StartRejected):
    reason = "Rapid fire round is already running"


class NoQuestionsConfigured(StartRejected):
    reason = "No rapid fire questions are configured"


class NoApprovedParticipants(StartRejected):
    reason = "No participants are approved for the rapid fire round"
