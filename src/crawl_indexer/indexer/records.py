"""
Record types delivered by the upstream crawl stores.

One URL can have records from five stores: the crawl database, the fetch
results, parse metadata, parse text and the link database.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Well-known parse metadata keys
SEGMENT_NAME_KEY = "segment"
SIGNATURE_KEY = "digest"
LANGUAGE_KEY = "language"


class CrawlStatus(str, Enum):
    """The closed set of crawl datum phases."""

    DB_UNFETCHED = "db_unfetched"
    DB_FETCHED = "db_fetched"
    DB_GONE = "db_gone"
    FETCH_SUCCESS = "fetch_success"
    FETCH_RETRY = "fetch_retry"
    FETCH_GONE = "fetch_gone"

    @property
    def is_db(self):
        return self.value.startswith("db_")

    @property
    def is_fetch(self):
        return self.value.startswith("fetch_")


@dataclass
class CrawlDatum:
    """Crawl state of a URL.

    ``status`` is kept as delivered; it is only checked against
    :class:`CrawlStatus` when the record is classified.
    """

    status: Any
    fetch_time: float = 0.0
    retries: int = 0
    fetch_interval: float = 0.0
    score: float = 1.0
    signature: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Outlink:
    to_url: str
    anchor: str = ""


@dataclass
class ParseData:
    """Metadata extracted when a page was parsed."""

    title: str = ""
    outlinks: List[Outlink] = field(default_factory=list)
    content_meta: Dict[str, Any] = field(default_factory=dict)
    parse_meta: Dict[str, Any] = field(default_factory=dict)

    def get_meta(self, name):
        """Look a key up in the content metadata, then the parse metadata."""
        if name in self.content_meta:
            return self.content_meta[name]
        return self.parse_meta.get(name)

    @property
    def segment(self):
        return self.get_meta(SEGMENT_NAME_KEY)

    @property
    def digest(self):
        return self.get_meta(SIGNATURE_KEY)

    @property
    def language(self):
        return self.get_meta(LANGUAGE_KEY)


@dataclass
class ParseText:
    text: str = ""


@dataclass
class Inlink:
    from_url: str
    anchor: str = ""


@dataclass
class Inlinks:
    """Known inbound links of a URL."""

    inlinks: List[Inlink] = field(default_factory=list)

    def __iter__(self):
        return iter(self.inlinks)

    def __len__(self):
        return len(self.inlinks)

    def anchors(self):
        """Non-empty anchor texts, in link order."""
        return [link.anchor for link in self.inlinks if link.anchor]


class Parse:
    """View over the parse text and parse data of one page."""

    def __init__(self, text, data):
        self.text_record = text
        self.data = data

    @property
    def text(self):
        return self.text_record.text

    @property
    def title(self):
        return self.data.title

    def __repr__(self):
        return f"Parse(title={self.title!r}, text={len(self.text)} chars)"
