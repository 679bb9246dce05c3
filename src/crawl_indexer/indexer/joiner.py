"""
Joins the records of one URL into a single bundle.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from crawl_indexer.common.errors import UnexpectedStatusError
from crawl_indexer.indexer.records import (
    CrawlDatum, CrawlStatus, Inlinks, Parse, ParseData, ParseText,
)

logger = logging.getLogger("indexer.joiner")


class RecordKind(Enum):
    DB_DATUM = "db_datum"
    FETCH_DATUM = "fetch_datum"
    PARSE_DATA = "parse_data"
    PARSE_TEXT = "parse_text"
    INLINKS = "inlinks"


def classify(record, key=None):
    """Determine the logical kind of a record.

    Args:
        record: Any record delivered for a key
        key (str): URL the record belongs to, used in error messages

    Returns:
        RecordKind: The kind, or None when the record is not a known type

    Raises:
        UnexpectedStatusError: A crawl datum carries an unknown status
    """
    if isinstance(record, Inlinks):
        return RecordKind.INLINKS
    if isinstance(record, CrawlDatum):
        try:
            status = CrawlStatus(record.status)
        except ValueError:
            raise UnexpectedStatusError(record.status, key)
        return RecordKind.DB_DATUM if status.is_db else RecordKind.FETCH_DATUM
    if isinstance(record, ParseData):
        return RecordKind.PARSE_DATA
    if isinstance(record, ParseText):
        return RecordKind.PARSE_TEXT
    return None


@dataclass
class JoinedBundle:
    """Everything known about one URL, at most one record per kind."""

    key: str
    db_datum: Optional[CrawlDatum] = None
    fetch_datum: Optional[CrawlDatum] = None
    parse_data: Optional[ParseData] = None
    parse_text: Optional[ParseText] = None
    inlinks: Optional[Inlinks] = None

    _SLOTS = {
        RecordKind.DB_DATUM: 'db_datum',
        RecordKind.FETCH_DATUM: 'fetch_datum',
        RecordKind.PARSE_DATA: 'parse_data',
        RecordKind.PARSE_TEXT: 'parse_text',
        RecordKind.INLINKS: 'inlinks',
    }

    def merge(self, kind, record):
        """Store a record in its slot. A later record of a kind replaces an earlier one."""
        slot = self._SLOTS[kind]
        if getattr(self, slot) is not None:
            logger.debug(f"Replacing earlier {kind.value} record for {self.key}")
        setattr(self, slot, record)

    @property
    def is_complete(self):
        return (self.db_datum is not None and self.fetch_datum is not None
                and self.parse_data is not None and self.parse_text is not None)

    @property
    def parse(self):
        return Parse(self.parse_text, self.parse_data)


def join(key, records: Iterable) -> Optional[JoinedBundle]:
    """Join all records of a key into a bundle.

    Records are merged in the order given and the last record of each kind
    wins. The record source decides that order; see
    :mod:`crawl_indexer.indexer.record_source`.

    Records of an unknown type are logged and skipped, while a crawl datum
    with an unknown status aborts with :class:`UnexpectedStatusError`.

    Returns:
        JoinedBundle: The bundle, or None if the db datum, fetch datum,
        parse data or parse text is missing
    """
    bundle = JoinedBundle(key=key)
    for record in records:
        kind = classify(record, key)
        if kind is None:
            logger.warning(f"Unrecognized type: {type(record).__name__} (url: {key})")
            continue
        bundle.merge(kind, record)

    if not bundle.is_complete:
        logger.debug(f"Incomplete records for {key}, no document produced")
        return None
    return bundle
