"""
Tests for the indexer node: per-url document assembly, worker runs and the
command line entry point.
"""
import contextlib
import io
import os
import shutil
import tempfile
import unittest
from unittest import mock

from whoosh import index as whoosh_index

from crawl_indexer.common.config import DONE_NAME, IndexerConfig
from crawl_indexer.common.errors import IndexingError, IndexWriteError, UnexpectedStatusError
from crawl_indexer.indexer.commit import LocalDestination
from crawl_indexer.indexer.filters import (
    FilterPipeline, IndexingFilter, IndexingFilters, ScoringFilter, ScoringFilters,
)
from crawl_indexer.indexer.indexer_node import Indexer, IndexerNode, main, parse_args
from crawl_indexer.indexer.plugins import (
    BasicIndexingFilter, LanguageIndexingFilter, OPICScoringFilter,
)
from crawl_indexer.indexer.records import CrawlDatum, Inlink, Inlinks
from crawl_indexer.indexer.status import LoggingStatusReporter

from crawl_fixtures import make_crawl, page_records

URL = "http://example.com/a"


class AlwaysFailIndexingFilter(IndexingFilter):
    def filter(self, doc, parse, url, fetch_datum, inlinks):
        raise IndexingError("rejected")


class RejectUrlFilter(IndexingFilter):
    def __init__(self, url):
        super().__init__()
        self.url = url

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        if url == self.url:
            raise IndexingError(f"rejected {url}")
        return doc


class FailScoreForUrl(ScoringFilter):
    def __init__(self, url):
        super().__init__()
        self.url = url

    def indexer_score(self, url, doc, db_datum, fetch_datum, parse, inlinks, init_score):
        if url == self.url:
            raise RuntimeError("scorer crashed")
        return init_score * 2.5


def default_pipeline(indexing=None, scoring=None):
    config = IndexerConfig()
    return FilterPipeline(
        IndexingFilters([BasicIndexingFilter(config), LanguageIndexingFilter(config)] + (indexing or [])),
        ScoringFilters([OPICScoringFilter(config)] + (scoring or [])),
    )


def stored_documents(path):
    ix = whoosh_index.open_dir(path)
    with ix.searcher() as searcher:
        return list(searcher.documents())


class TestReduce(unittest.TestCase):
    def setUp(self):
        self.node = IndexerNode(IndexerConfig(), reporter=LoggingStatusReporter())

    def test_example_page(self):
        doc = self.node.reduce(URL, page_records())
        self.assertEqual(doc.get("segment"), "S1")
        self.assertEqual(doc.get("digest"), "D1")
        self.assertEqual(doc.get("boost"), "1.0")
        self.assertEqual(doc.get("lang"), "en")
        self.assertEqual(doc.get("url"), URL)
        for name in ("segment", "digest", "boost"):
            field = doc.get_fields(name)[0]
            self.assertTrue(field.stored)
            self.assertFalse(field.indexed)

    def test_inlinks_only_produces_nothing(self):
        self.assertIsNone(self.node.reduce(URL, [Inlinks([Inlink("http://example.com/b", "a")])]))
        self.assertEqual(self.node.stats.incomplete, 1)

    def test_stored_boost_matches_applied_boost(self):
        for score in (1.0, 4.0, 0.3, 2.0):
            doc = self.node.reduce(URL, page_records(score=score))
            self.assertEqual(doc.get("boost"), str(doc.boost))
            self.assertEqual(float(doc.get("boost")), doc.boost)
            self.assertAlmostEqual(doc.boost, score ** 0.5)

    def test_unknown_status_aborts(self):
        with self.assertRaises(UnexpectedStatusError):
            self.node.reduce(URL, page_records(fetch_status="linked"))

    def test_enrichment_failure_drops_document(self):
        node = IndexerNode(IndexerConfig(), reporter=LoggingStatusReporter(),
                           pipeline=default_pipeline(indexing=[AlwaysFailIndexingFilter()]))
        with self.assertLogs("indexer", level="WARNING") as logs:
            self.assertIsNone(node.reduce(URL, page_records()))
        self.assertIn(f"Error indexing {URL}", logs.output[0])
        self.assertEqual(node.stats.indexing_failed, 1)
        self.assertEqual(node.stats.failed_urls, [URL])

    def test_scoring_failure_drops_document(self):
        node = IndexerNode(IndexerConfig(), reporter=LoggingStatusReporter(),
                           pipeline=default_pipeline(scoring=[FailScoreForUrl(URL)]))
        self.assertIsNone(node.reduce(URL, page_records()))
        self.assertEqual(node.stats.scoring_failed, 1)

        doc = node.reduce("http://example.com/other", page_records(url="http://example.com/other"))
        self.assertEqual(doc.get("boost"), "2.5")


class TestRun(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.config = IndexerConfig.from_mapping({'localDir': os.path.join(self.tmp, "local"),
                                                  'heartbeatInterval': '0.01'})
        self.destination = LocalDestination(os.path.join(self.tmp, "index", "part-00000"))
        self.urls = [f"http://example.com/{i}" for i in range(5)]

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def groups(self):
        return [(url, page_records(url=url, text=f"page {url}")) for url in self.urls]

    def node(self, pipeline=None):
        return IndexerNode(self.config, reporter=LoggingStatusReporter(), pipeline=pipeline)

    def test_one_document_per_complete_url(self):
        groups = self.groups()
        groups.append(("http://example.com/partial", page_records()[:3]))
        stats = self.node().run(groups, self.destination)

        self.assertEqual(stats.indexed, 5)
        self.assertEqual(stats.incomplete, 1)
        self.assertTrue(self.destination.is_done())
        urls = sorted(doc["url"] for doc in stored_documents(self.destination.path))
        self.assertEqual(urls, sorted(self.urls))
        self.assertEqual(os.listdir(self.config.local_dir), [])

    def test_filter_failure_only_drops_that_url(self):
        rejected = self.urls[2]
        pipeline = default_pipeline(indexing=[RejectUrlFilter(rejected)])
        stats = self.node(pipeline).run(self.groups(), self.destination)

        self.assertEqual(stats.indexed, 4)
        urls = {doc["url"] for doc in stored_documents(self.destination.path)}
        self.assertEqual(urls, set(self.urls) - {rejected})

    def test_always_failing_enrichment_still_publishes(self):
        pipeline = default_pipeline(indexing=[AlwaysFailIndexingFilter()])
        stats = self.node(pipeline).run(self.groups(), self.destination)

        self.assertEqual(stats.indexed, 0)
        self.assertEqual(stats.indexing_failed, 5)
        self.assertTrue(self.destination.is_done())
        self.assertEqual(whoosh_index.open_dir(self.destination.path).doc_count(), 0)

    def test_unknown_status_aborts_without_sentinel(self):
        groups = self.groups()
        groups.insert(2, ("http://example.com/bad", page_records() + [CrawlDatum(status="linked")]))
        with self.assertRaises(UnexpectedStatusError):
            self.node().run(groups, self.destination)
        self.assertFalse(self.destination.is_done())
        self.assertFalse(os.path.exists(self.destination.path))
        self.assertEqual(os.listdir(self.config.local_dir), [])

    def test_finalize_failure_leaves_no_sentinel(self):
        with mock.patch("crawl_indexer.indexer.index_builder.IndexBuilder.optimize",
                        side_effect=IndexWriteError("merge failed")):
            with self.assertRaises(IndexWriteError):
                self.node().run(self.groups(), self.destination)
        self.assertFalse(self.destination.is_done())

    def test_stale_index_is_cleared_before_indexing(self):
        os.makedirs(self.destination.path)
        self.destination.mark_done()
        with mock.patch("crawl_indexer.indexer.index_builder.IndexBuilder.add",
                        side_effect=IndexWriteError("disk full")):
            with self.assertRaises(IndexWriteError):
                self.node().run(self.groups(), self.destination)
        self.assertFalse(self.destination.is_done())


class TestIndexer(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.index_dir = os.path.join(self.tmp, "indexes")
        self.options = {'localDir': os.path.join(self.tmp, "local"), 'heartbeatInterval': '0.01'}

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_example_scenario(self):
        crawldb, linkdb, segment = make_crawl(
            self.tmp, {URL: {'text': "hello world", 'digest': "D1", 'language': "en"}},
            segment_name="S1")
        stats = Indexer(IndexerConfig.from_mapping(self.options)).index(
            self.index_dir, crawldb, linkdb, [segment])

        self.assertEqual(stats[0].indexed, 1)
        part = os.path.join(self.index_dir, "part-00000")
        self.assertTrue(os.path.isfile(os.path.join(part, DONE_NAME)))
        docs = stored_documents(part)
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["segment"], "S1")
        self.assertEqual(docs[0]["digest"], "D1")
        self.assertEqual(docs[0]["boost"], "1.0")
        self.assertEqual(docs[0]["lang"], "en")

    def test_inlink_only_url_produces_no_document(self):
        crawldb, linkdb, segment = make_crawl(
            self.tmp, {URL: {'text': "hello world"}},
            inlinks={"http://example.com/orphan": [(URL, "orphan link")]})
        stats = Indexer(IndexerConfig.from_mapping(self.options)).index(
            self.index_dir, crawldb, linkdb, [segment])
        self.assertEqual(stats[0].indexed, 1)
        self.assertEqual(stats[0].incomplete, 1)
        urls = [doc["url"] for doc in stored_documents(os.path.join(self.index_dir, "part-00000"))]
        self.assertEqual(urls, [URL])

    def test_partitions_each_get_a_sentinel(self):
        pages = {f"http://example.com/{i}": {'text': f"page {i}"} for i in range(20)}
        crawldb, linkdb, segment = make_crawl(self.tmp, pages)
        options = dict(self.options, partitions='2')
        stats = Indexer(IndexerConfig.from_mapping(options)).index(
            self.index_dir, crawldb, linkdb, [segment])

        self.assertEqual(len(stats), 2)
        self.assertEqual(sum(s.indexed for s in stats), 20)
        total = 0
        for part in ("part-00000", "part-00001"):
            path = os.path.join(self.index_dir, part)
            self.assertTrue(os.path.isfile(os.path.join(path, DONE_NAME)))
            total += len(stored_documents(path))
        self.assertEqual(total, 20)

    def test_rerun_with_fewer_partitions_removes_stale_parts(self):
        pages = {f"http://example.com/{i}": {'text': f"page {i}"} for i in range(20)}
        crawldb, linkdb, segment = make_crawl(self.tmp, pages)
        Indexer(IndexerConfig.from_mapping(dict(self.options, partitions='3'))).index(
            self.index_dir, crawldb, linkdb, [segment])
        self.assertEqual(sorted(os.listdir(self.index_dir)),
                         ["part-00000", "part-00001", "part-00002"])

        Indexer(IndexerConfig.from_mapping(dict(self.options, partitions='1'))).index(
            self.index_dir, crawldb, linkdb, [segment])

        self.assertEqual(os.listdir(self.index_dir), ["part-00000"])
        part = os.path.join(self.index_dir, "part-00000")
        self.assertTrue(os.path.isfile(os.path.join(part, DONE_NAME)))
        self.assertEqual(len(stored_documents(part)), 20)


class TestMain(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_parse_args(self):
        positional, options = parse_args(["out", "-DmergeFactor=5", "db", "-Dx=a=b"])
        self.assertEqual(positional, ["out", "db"])
        self.assertEqual(options, {'mergeFactor': "5", 'x': "a=b"})

    def test_too_few_arguments_prints_usage(self):
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr), \
                mock.patch("crawl_indexer.indexer.indexer_node.Indexer") as indexer_cls:
            self.assertEqual(main([os.path.join(self.tmp, "index"), "crawldb", "linkdb"]), 0)
        self.assertIn("Usage", stderr.getvalue())
        indexer_cls.assert_not_called()
        self.assertFalse(os.path.exists(os.path.join(self.tmp, "index")))

    def test_indexes_segments(self):
        crawldb, linkdb, segment = make_crawl(self.tmp, {URL: {'text': "hello world"}})
        index_dir = os.path.join(self.tmp, "index")
        with mock.patch("crawl_indexer.indexer.indexer_node.configure_logging"):
            code = main([index_dir, crawldb, linkdb, segment,
                         f"-DlocalDir={os.path.join(self.tmp, 'local')}", "-DheartbeatInterval=0.01"])
        self.assertEqual(code, 0)
        self.assertTrue(os.path.isfile(os.path.join(index_dir, "part-00000", DONE_NAME)))

    def test_fatal_error_exit_code(self):
        crawldb, linkdb, segment = make_crawl(self.tmp, {URL: {'text': "x"}}, db_status="linked")
        index_dir = os.path.join(self.tmp, "index")
        with mock.patch("crawl_indexer.indexer.indexer_node.configure_logging"):
            code = main([index_dir, crawldb, linkdb, segment,
                         f"-DlocalDir={os.path.join(self.tmp, 'local')}"])
        self.assertEqual(code, 1)
        self.assertFalse(os.path.exists(os.path.join(index_dir, "part-00000", DONE_NAME)))


if __name__ == '__main__':
    unittest.main()
