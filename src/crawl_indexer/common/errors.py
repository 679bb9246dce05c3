"""
Exceptions raised by the crawl indexer.
"""


class IndexerError(Exception):
    """Base class for indexer failures."""


class ConfigError(IndexerError):
    """An option value or filter name could not be used."""


class RecordFormatError(IndexerError):
    """An upstream store holds a record that cannot be decoded."""


class UnexpectedStatusError(IndexerError):
    """A crawl datum carries a status outside the known phases.

    Fatal: the upstream data contract has been violated and the job aborts.
    """

    def __init__(self, status, key=None):
        self.status = status
        self.key = key
        message = f"Unexpected status: {status!r}"
        if key is not None:
            message += f" (url: {key})"
        super().__init__(message)


class IndexingError(IndexerError):
    """An indexing filter rejected a document. Only that document is dropped."""


class ScoringError(IndexerError):
    """A scoring filter failed for a document. Only that document is dropped."""


class IndexWriteError(IndexerError):
    """The local index could not be written or finalized."""


class CommitError(IndexerError):
    """Publishing the index or writing its completion sentinel failed."""
