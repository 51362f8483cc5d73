"""Exception types raised by the indexer."""


class IndexerError(Exception):
    """Base class for every error reported by the indexer."""


class ConnectionFailed(IndexerError):
    """A connection to a peer or daemon could not be used."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Connection error: {message}")


class Interrupted(IndexerError):
    """The process was interrupted by an external signal."""

    def __init__(self, signal: int) -> None:
        self.signal = signal
        super().__init__(f"Interrupted by signal {signal}")


class TooPopular(IndexerError):
    """A script has more history entries than the configured limit."""

    def __init__(self) -> None:
        super().__init__("Too many history entries")