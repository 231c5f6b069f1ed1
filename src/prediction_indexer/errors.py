"""Exception types raised across the indexer."""


class IndexerError(Exception):
    pass


class ConnectionUnavailableError(IndexerError):
    """A chain or stream handle was requested while it is not connected."""


class DatabaseUnavailableError(IndexerError):
    """No datastore connection could be acquired after retries."""


class NodeExhaustedError(IndexerError):
    """Every configured RPC URL failed during startup."""


class EpochReconstructionError(IndexerError):
    """An epoch could not be rebuilt from chain data."""

    def __init__(self, epoch: int, reason: str):
        super().__init__(f"epoch {epoch}: {reason}")
        self.epoch = epoch
        self.reason = reason


class IncompleteEpochError(EpochReconstructionError):
    """Round, bet or claim data failed the completeness check."""
