"""
Indexer Node for the distributed web crawling system.
Joins the crawl, fetch, parse and link records of each URL into a document,
runs the indexing and scoring filters, and commits the documents into a
published Whoosh index.
"""
import logging
import os
import shutil
import sys
import tempfile
import time
import traceback
import uuid
from dataclasses import dataclass, field

from crawl_indexer.common.config import IndexerConfig
from crawl_indexer.common.errors import IndexingError, ScoringError
from crawl_indexer.common.utils import part_name, partition_for
from crawl_indexer.indexer import commit
from crawl_indexer.indexer.document import Document
from crawl_indexer.indexer.filters import FilterPipeline
from crawl_indexer.indexer.index_builder import AnalyzerFactory, IndexBuilder
from crawl_indexer.indexer.joiner import join
from crawl_indexer.indexer.record_source import LocalRecordSource
from crawl_indexer.indexer.status import DynamoDBStatusReporter, LoggingStatusReporter

logger = logging.getLogger("indexer")

USAGE = "Usage: crawl-index <index> <crawldb> <linkdb> <segment> ... [-Dkey=value ...]"


@dataclass
class IndexStats:
    indexed: int = 0
    incomplete: int = 0
    indexing_failed: int = 0
    scoring_failed: int = 0
    failed_urls: list = field(default_factory=list)

    @property
    def processed(self):
        return self.indexed + self.incomplete + self.indexing_failed + self.scoring_failed


class IndexerNode:
    """
    One indexing worker. Owns its filter pipeline, analyzer lookup and the
    local index of a single commit cycle.
    """
    def __init__(self, config=None, reporter=None, pipeline=None, analyzer_factory=None):
        self.config = config or IndexerConfig()
        self.indexer_id = f"indexer-{uuid.uuid4()}"
        self.reporter = reporter or self._default_reporter()
        self.pipeline = pipeline or FilterPipeline.from_config(self.config)
        self.analyzer_factory = analyzer_factory or AnalyzerFactory(self.config)
        self.stats = IndexStats()
        logger.info(f"Initialized indexer node with ID: {self.indexer_id}")

    def _default_reporter(self):
        if self.config.status_table:
            return DynamoDBStatusReporter(self.config.status_table, self.indexer_id,
                                          region_name=self.config.aws_region)
        return LoggingStatusReporter(self.indexer_id)

    def reduce(self, key, records):
        """Turn the records of one URL into a scored document.

        Args:
            key (str): The URL
            records (list): Every record delivered for the URL

        Returns:
            Document: The document, or None if the records are incomplete or
            a filter rejected it

        Raises:
            UnexpectedStatusError: A crawl datum has an unknown status
        """
        bundle = join(key, records)
        if bundle is None:
            self.stats.incomplete += 1
            return None

        parse = bundle.parse
        doc = Document()
        # segment maps the merged index back to segment files
        if bundle.parse_data.segment is not None:
            doc.add("segment", bundle.parse_data.segment, stored=True, indexed=False)
        # digest is used by dedup
        if bundle.parse_data.digest is not None:
            doc.add("digest", bundle.parse_data.digest, stored=True, indexed=False)

        try:
            doc = self.pipeline.enrich(doc, parse, key, bundle.fetch_datum, bundle.inlinks)
        except IndexingError as e:
            logger.warning(f"Error indexing {key}: {e}")
            self.stats.indexing_failed += 1
            self.stats.failed_urls.append(key)
            return None

        try:
            boost = self.pipeline.score(key, doc, bundle.db_datum, bundle.fetch_datum, parse,
                                        bundle.inlinks, base_boost=1.0)
        except ScoringError as e:
            logger.warning(f"Error calculating score {key}: {e}")
            self.stats.scoring_failed += 1
            self.stats.failed_urls.append(key)
            return None

        doc.boost = boost
        # stored copy of the boost for explain and dedup
        doc.remove("boost")
        doc.add("boost", str(boost), stored=True, indexed=False)
        self.stats.indexed += 1
        return doc

    def run(self, groups, destination):
        """Index every group and commit the result to ``destination``.

        Args:
            groups: Iterable of (url, records) pairs for this worker's partition
            destination: LocalDestination or S3Destination for the index

        Returns:
            IndexStats: Counts for this run
        """
        self.stats = IndexStats()
        self.reporter.set_status("indexing")
        destination.clear()

        os.makedirs(self.config.local_dir, exist_ok=True)
        working_dir = tempfile.mkdtemp(prefix="index-_", dir=self.config.local_dir)
        builder = None

        start_time = time.time()
        try:
            builder = IndexBuilder.open(working_dir, self.config, self.analyzer_factory)
            for key, records in groups:
                doc = self.reduce(key, records)
                if doc is not None:
                    builder.add(doc)
        except BaseException:
            logger.error(f"Indexing aborted, nothing published to {destination}")
            logger.error(traceback.format_exc())
            if builder is not None:
                builder.abort()
            if os.path.exists(working_dir):
                shutil.rmtree(working_dir, ignore_errors=True)
            self.reporter.set_status("failed")
            raise

        try:
            commit.close(builder, destination, reporter=self.reporter,
                         interval=self.config.heartbeat_interval)
        except BaseException:
            self.reporter.set_status("failed")
            raise

        self.reporter.set_status("done")
        logger.info(f"Indexed {self.stats.indexed} of {self.stats.processed} urls into {destination} "
                    f"in {time.time() - start_time:.2f} seconds")
        return self.stats


class Indexer:
    """Creates indexes for segments."""

    def __init__(self, config=None, s3_client=None):
        self.config = config or IndexerConfig()
        self.s3_client = s3_client

    def partitions(self, groups):
        """Split grouped records across the configured number of workers."""
        parts = [[] for _ in range(self.config.partitions)]
        for key, records in groups.items():
            parts[partition_for(key, self.config.partitions)].append((key, records))
        return parts

    def _clear_stale_parts(self, output):
        # Partitions beyond this run's count would otherwise keep their sentinels.
        current = {part_name(p) for p in range(self.config.partitions)}
        for name in output.part_names():
            if name not in current:
                logger.info(f"Indexer: removing stale partition {name}")
                output.child(name).clear()

    def index(self, index_dir, crawl_db, link_db, segments):
        """Index the given segments into ``index_dir``.

        Each partition is written by its own worker into ``<index_dir>/part-NNNNN``
        with its own completion sentinel.

        Returns:
            list: IndexStats per partition
        """
        logger.info("Indexer: starting")
        logger.info(f"Indexer: linkdb: {link_db}")
        for segment in segments:
            logger.info(f"Indexer: adding segment: {segment}")

        source = LocalRecordSource(crawl_db, link_db, segments)
        groups = source.group_by_key()
        output = commit.destination_for(index_dir, s3_client=self.s3_client)
        self._clear_stale_parts(output)

        results = []
        for partition, part in enumerate(self.partitions(groups)):
            node = IndexerNode(self.config)
            results.append(node.run(part, output.child(part_name(partition))))

        logger.info("Indexer: done")
        return results


def parse_args(argv):
    """Split -Dkey=value options from positional arguments."""
    options = {}
    positional = []
    for arg in argv:
        if arg.startswith('-D') and '=' in arg:
            key, _, value = arg[2:].partition('=')
            options[key] = value
        else:
            positional.append(arg)
    return positional, options


def configure_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] [Indexer] %(message)s',
        handlers=[
            logging.FileHandler("indexer.log"),
            logging.StreamHandler()
        ]
    )


def main(argv=None):
    """Command line entry point. Returns the process exit code."""
    positional, options = parse_args(sys.argv[1:] if argv is None else argv)
    if len(positional) < 4:
        print(USAGE, file=sys.stderr)
        return 0

    configure_logging()
    try:
        config = IndexerConfig.from_mapping(options)
        Indexer(config).index(positional[0], positional[1], positional[2], positional[3:])
    except Exception as e:
        logger.critical(f"Indexer failed: {e}")
        logger.critical(traceback.format_exc())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
