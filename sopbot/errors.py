"""
Error taxonomy for the SOP bot.

An empty shortlist or an all-deprecated shortlist is a turn outcome
(TurnOutcome.NO_MATCH / DEPRECATED), not an exception.
"""


class SOPBotError(Exception):
    """Base exception for SOP bot errors."""
    pass


class RetrievalFailure(SOPBotError):
    """Raised when the SOP source is unreachable or returns malformed data."""
    pass


class GenerationFailure(SOPBotError):
    """Raised when the answer generator fails or returns an empty answer."""
    pass


class LoggingFailure(SOPBotError):
    """Raised when a usage or feedback record cannot be written."""
    pass


class PersistenceFailure(SOPBotError):
    """Raised when the session file cannot be written."""
    pass


class TransportError(SOPBotError):
    """Raised when the chat transport rejects a call."""
    pass
