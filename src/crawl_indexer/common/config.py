"""
Configuration settings for the crawl indexer.
"""
import logging
import tempfile

from crawl_indexer.common.errors import ConfigError

logger = logging.getLogger("indexer.config")

# Index writer settings
MERGE_FACTOR = 10  # segments merged at once
MIN_BUFFERED_DOCS = 100  # documents buffered before a segment is flushed
MAX_MERGE_DOCS = None  # segments larger than this are never merged; None is unbounded
TERM_INDEX_INTERVAL = 128  # postings block size of the index codec
MAX_INDEXED_TOKENS_PER_FIELD = 10000

# Filter chains
INDEXING_FILTERS = ["basic", "language"]
SCORING_FILTERS = ["opic"]
SCORE_POWER = 0.5

# Worker settings
PARTITIONS = 1
LOCAL_DIR = tempfile.gettempdir()
HEARTBEAT_INTERVAL = 1.0  # seconds between "closing" reports while optimizing

# Status reporting
STATUS_TABLE = None  # DynamoDB table for worker status; None logs status instead
AWS_REGION = 'us-east-1'

# Completion sentinel written inside every published index
DONE_NAME = "index.done"
INDEX_PART_GLOB = "part-*"

# Store layout
CRAWLDB_CURRENT = "current"
LINKDB_CURRENT = "current"
FETCH_DIR_NAME = "crawl_fetch"
PARSE_DATA_DIR_NAME = "parse_data"
PARSE_TEXT_DIR_NAME = "parse_text"
PART_GLOB = "part-*.jsonl"


def _to_int(name, value, allow_none=False):
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "unbounded")):
        if allow_none:
            return None
        raise ConfigError(f"{name} requires an integer value")
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if result < 1:
        raise ConfigError(f"{name} must be positive, got {result}")
    return result


def _to_float(name, value):
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


def _to_list(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


class IndexerConfig:
    """Recognized indexer options with their defaults.

    Option names follow the camelCase keys accepted on the command line
    (``-DmergeFactor=20``). Unrecognized keys are ignored.
    """

    OPTIONS = {
        'mergeFactor': 'merge_factor',
        'minBufferedDocs': 'min_buffered_docs',
        'maxMergeDocs': 'max_merge_docs',
        'termIndexInterval': 'term_index_interval',
        'maxIndexedTokensPerField': 'max_indexed_tokens_per_field',
        'indexingFilters': 'indexing_filters',
        'scoringFilters': 'scoring_filters',
        'scorePower': 'score_power',
        'partitions': 'partitions',
        'localDir': 'local_dir',
        'heartbeatInterval': 'heartbeat_interval',
        'statusTable': 'status_table',
        'awsRegion': 'aws_region',
    }

    def __init__(self):
        self.merge_factor = MERGE_FACTOR
        self.min_buffered_docs = MIN_BUFFERED_DOCS
        self.max_merge_docs = MAX_MERGE_DOCS
        self.term_index_interval = TERM_INDEX_INTERVAL
        self.max_indexed_tokens_per_field = MAX_INDEXED_TOKENS_PER_FIELD
        self.indexing_filters = list(INDEXING_FILTERS)
        self.scoring_filters = list(SCORING_FILTERS)
        self.score_power = SCORE_POWER
        self.partitions = PARTITIONS
        self.local_dir = LOCAL_DIR
        self.heartbeat_interval = HEARTBEAT_INTERVAL
        self.status_table = STATUS_TABLE
        self.aws_region = AWS_REGION
        # Compound segment files are never written.
        self.use_compound_file = False

    @classmethod
    def from_mapping(cls, options=None):
        """Build a config from a mapping of option name to value.

        Args:
            options (dict): Option values, typically strings from the command line

        Returns:
            IndexerConfig: Config with recognized options applied
        """
        config = cls()
        for key, value in (options or {}).items():
            attr = cls.OPTIONS.get(key)
            if attr is None:
                logger.debug(f"Ignoring unrecognized option: {key}")
                continue
            setattr(config, attr, config._coerce(key, value))
        return config

    def _coerce(self, key, value):
        if key == 'maxMergeDocs':
            return _to_int(key, value, allow_none=True)
        if key == 'mergeFactor':
            factor = _to_int(key, value)
            if factor < 2:
                raise ConfigError(f"{key} must be at least 2, got {factor}")
            return factor
        if key in ('minBufferedDocs', 'termIndexInterval',
                   'maxIndexedTokensPerField', 'partitions'):
            return _to_int(key, value)
        if key in ('indexingFilters', 'scoringFilters'):
            return _to_list(value)
        if key in ('scorePower', 'heartbeatInterval'):
            number = _to_float(key, value)
            if key == 'heartbeatInterval' and number <= 0:
                raise ConfigError(f"{key} must be positive, got {number}")
            return number
        if key == 'statusTable':
            return value or None
        return str(value)

    def __repr__(self):
        values = ", ".join(f"{key}={getattr(self, attr)!r}" for key, attr in self.OPTIONS.items())
        return f"IndexerConfig({values})"
