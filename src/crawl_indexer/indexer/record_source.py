"""
Reads upstream crawl stores and groups their records by URL.

Each store is a directory of ``part-*.jsonl`` files, one JSON object per
line with a ``url`` key::

    <crawldb>/current/           crawl datums
    <linkdb>/current/            inlinks
    <segment>/crawl_fetch/       fetch datums
    <segment>/parse_data/        parse metadata
    <segment>/parse_text/        parse text

Records are delivered in a fixed order: crawl db, link db, then every
segment in the order given, part files sorted by name and lines in file
order. The joiner keeps the last record of each kind, so for a URL fetched
in several segments the record from the later segment wins.
"""
import glob
import json
import logging
import os
from collections import OrderedDict

from crawl_indexer.common.config import (
    CRAWLDB_CURRENT, FETCH_DIR_NAME, LINKDB_CURRENT, PARSE_DATA_DIR_NAME,
    PARSE_TEXT_DIR_NAME, PART_GLOB,
)
from crawl_indexer.common.errors import RecordFormatError
from crawl_indexer.indexer.records import (
    CrawlDatum, Inlink, Inlinks, Outlink, ParseData, ParseText,
)

logger = logging.getLogger("indexer.source")


def _crawl_datum(row):
    if 'status' not in row:
        raise ValueError("missing status")
    return CrawlDatum(
        status=row['status'],
        fetch_time=float(row.get('fetch_time', 0.0)),
        retries=int(row.get('retries', 0)),
        fetch_interval=float(row.get('fetch_interval', 0.0)),
        score=float(row.get('score', 1.0)),
        signature=row.get('signature'),
        metadata=dict(row.get('metadata') or {}),
    )


def _parse_data(row):
    return ParseData(
        title=row.get('title') or '',
        outlinks=[Outlink(link['to_url'], link.get('anchor', '')) for link in row.get('outlinks', [])],
        content_meta=dict(row.get('content_meta') or {}),
        parse_meta=dict(row.get('parse_meta') or {}),
    )


def _parse_text(row):
    return ParseText(text=row.get('text') or '')


def _inlinks(row):
    return Inlinks([Inlink(link['from_url'], link.get('anchor', '')) for link in row.get('inlinks', [])])


class LocalRecordSource:
    """Record source over a crawl db, a link db and one or more segments."""

    def __init__(self, crawl_db, link_db, segments):
        self.crawl_db = crawl_db
        self.link_db = link_db
        self.segments = list(segments)

    def stores(self):
        """(directory, decoder) pairs in delivery order."""
        stores = [
            (os.path.join(self.crawl_db, CRAWLDB_CURRENT), _crawl_datum),
            (os.path.join(self.link_db, LINKDB_CURRENT), _inlinks),
        ]
        for segment in self.segments:
            stores.append((os.path.join(segment, FETCH_DIR_NAME), _crawl_datum))
            stores.append((os.path.join(segment, PARSE_DATA_DIR_NAME), _parse_data))
            stores.append((os.path.join(segment, PARSE_TEXT_DIR_NAME), _parse_text))
        return stores

    def _read_store(self, directory, decode):
        if not os.path.isdir(directory):
            logger.warning(f"Store not found, skipping: {directory}")
            return
        for path in sorted(glob.glob(os.path.join(directory, PART_GLOB))):
            logger.debug(f"Reading {path}")
            with open(path, 'rb') as f:
                for lineno, raw in enumerate(f, 1):
                    if not raw.strip():
                        continue
                    try:
                        row = json.loads(raw.decode('utf-8'))
                        url = row['url']
                        record = decode(row)
                    except (ValueError, KeyError, TypeError) as e:
                        raise RecordFormatError(f"{path}:{lineno}: {e}") from e
                    yield url, record

    def read_records(self):
        """Yield (url, record) pairs from every store."""
        for directory, decode in self.stores():
            logger.info(f"Reading records from {directory}")
            yield from self._read_store(directory, decode)

    def group_by_key(self):
        """Map each url to its records, in delivery order."""
        groups = OrderedDict()
        for url, record in self.read_records():
            groups.setdefault(url, []).append(record)
        logger.info(f"Grouped records for {len(groups)} urls")
        return groups
