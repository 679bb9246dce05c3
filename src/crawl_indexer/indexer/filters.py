"""
Indexing and scoring filter chains.

Indexing filters enrich a document from the joined records of a URL.
Scoring filters then compute the document boost. Both are pluggable: a
chain is configured as a list of built-in names or ``module:ClassName``
paths, and each class is instantiated with the worker's IndexerConfig.
"""
import importlib
import logging

from crawl_indexer.common.errors import ConfigError, IndexingError, ScoringError

logger = logging.getLogger("indexer.filters")

BUILTIN_INDEXING_FILTERS = {
    'basic': 'crawl_indexer.indexer.plugins:BasicIndexingFilter',
    'language': 'crawl_indexer.indexer.plugins:LanguageIndexingFilter',
    'keywords': 'crawl_indexer.indexer.plugins:KeywordIndexingFilter',
}

BUILTIN_SCORING_FILTERS = {
    'opic': 'crawl_indexer.indexer.plugins:OPICScoringFilter',
}


class IndexingFilter:
    """Adds, replaces or removes document fields."""

    def __init__(self, config=None):
        self.config = config

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        """Return the (possibly new) document, or raise IndexingError to reject it."""
        raise NotImplementedError


class ScoringFilter:
    """Computes the boost of a document."""

    def __init__(self, config=None):
        self.config = config

    def indexer_score(self, url, doc, db_datum, fetch_datum, parse, inlinks, init_score):
        """Return the new score, or raise ScoringError."""
        raise NotImplementedError


def load_filter(spec, builtins, base_class, config):
    """Instantiate a filter from a built-in name or a ``module:ClassName`` path."""
    path = builtins.get(spec, spec)
    if ':' not in path:
        raise ConfigError(f"Unknown filter: {spec!r}")
    module_name, class_name = path.split(':', 1)
    try:
        module = importlib.import_module(module_name)
        cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load filter {spec!r}: {e}")
    if not (isinstance(cls, type) and issubclass(cls, base_class)):
        raise ConfigError(f"{spec!r} is not a {base_class.__name__}")
    return cls(config)


class IndexingFilters:
    """Runs indexing filters in order, each receiving the previous filter's document."""

    def __init__(self, filters):
        self.filters = list(filters)

    @classmethod
    def from_config(cls, config):
        return cls(load_filter(name, BUILTIN_INDEXING_FILTERS, IndexingFilter, config)
                   for name in config.indexing_filters)

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        for indexing_filter in self.filters:
            doc = indexing_filter.filter(doc, parse, url, fetch_datum, inlinks)
            if doc is None:
                raise IndexingError(f"{type(indexing_filter).__name__} returned no document")
        return doc


class ScoringFilters:
    """Runs scoring filters in order, threading the score through the chain."""

    def __init__(self, filters):
        self.filters = list(filters)

    @classmethod
    def from_config(cls, config):
        return cls(load_filter(name, BUILTIN_SCORING_FILTERS, ScoringFilter, config)
                   for name in config.scoring_filters)

    def indexer_score(self, url, doc, db_datum, fetch_datum, parse, inlinks, init_score):
        score = init_score
        for scoring_filter in self.filters:
            score = scoring_filter.indexer_score(url, doc, db_datum, fetch_datum,
                                                 parse, inlinks, score)
        return score


class FilterPipeline:
    """Enrichment followed by scoring for one worker.

    Filters are third-party code: anything they raise besides the declared
    errors is wrapped, so a misbehaving filter only costs the current document.
    """

    def __init__(self, indexing_filters, scoring_filters):
        self.indexing_filters = indexing_filters
        self.scoring_filters = scoring_filters

    @classmethod
    def from_config(cls, config):
        pipeline = cls(IndexingFilters.from_config(config), ScoringFilters.from_config(config))
        logger.info(f"Indexing filters: {[type(f).__name__ for f in pipeline.indexing_filters.filters]}")
        logger.info(f"Scoring filters: {[type(f).__name__ for f in pipeline.scoring_filters.filters]}")
        return pipeline

    def enrich(self, doc, parse, url, fetch_datum, inlinks=None):
        try:
            return self.indexing_filters.filter(doc, parse, url, fetch_datum, inlinks)
        except IndexingError:
            raise
        except Exception as e:
            raise IndexingError(f"{type(e).__name__}: {e}") from e

    def score(self, url, doc, db_datum, fetch_datum, parse, inlinks=None, base_boost=1.0):
        try:
            boost = self.scoring_filters.indexer_score(url, doc, db_datum, fetch_datum,
                                                       parse, inlinks, base_boost)
            return float(boost)
        except ScoringError:
            raise
        except Exception as e:
            raise ScoringError(f"{type(e).__name__}: {e}") from e
