"""
Built-in indexing and scoring filters.
"""
import logging

from nltk.probability import FreqDist
from nltk.stem import PorterStemmer
from nltk.tokenize import RegexpTokenizer
from whoosh.analysis import STOP_WORDS

from crawl_indexer.common.errors import ScoringError
from crawl_indexer.common.utils import get_host, get_site
from crawl_indexer.indexer.filters import IndexingFilter, ScoringFilter

logger = logging.getLogger("indexer.plugins")


class BasicIndexingFilter(IndexingFilter):
    """Adds url, host, site, title, content and inlink anchors."""

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        doc.add("url", url, stored=True, indexed=True, tokenized=False)

        host = get_host(url)
        if host:
            doc.add("host", host, stored=True, indexed=True, tokenized=False)
            doc.add("site", get_site(url), stored=True, indexed=True, tokenized=False)

        if parse.title:
            doc.add("title", parse.title, stored=True, indexed=True)
        doc.add("content", parse.text, stored=False, indexed=True)

        if inlinks is not None:
            for anchor in inlinks.anchors():
                doc.add("anchor", anchor, stored=False, indexed=True)
        return doc


class LanguageIndexingFilter(IndexingFilter):
    """Copies the detected page language into the ``lang`` field."""

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        language = parse.data.language
        if language:
            doc.remove("lang")
            doc.add("lang", str(language).strip().lower(), stored=True, indexed=True,
                    tokenized=False)
        return doc


class KeywordExtractor:
    """Picks the most frequent Porter stems of a text, skipping stop words."""

    def __init__(self, limit=10, stop_words=STOP_WORDS):
        self.limit = limit
        self.tokenizer = RegexpTokenizer(r"[^\W_]+")
        self.stemmer = PorterStemmer()
        self.stop_words = frozenset(stop_words)

    def stems(self, text):
        for token in self.tokenizer.tokenize(text.lower()):
            if token not in self.stop_words:
                yield self.stemmer.stem(token)

    def keywords(self, text):
        if not text:
            return []
        return [stem for stem, _ in FreqDist(self.stems(text)).most_common(self.limit)]


class KeywordIndexingFilter(IndexingFilter):
    """Adds the ten most frequent stems of the page text as ``keywords``."""

    def __init__(self, config=None):
        super().__init__(config)
        self.extractor = KeywordExtractor()

    def filter(self, doc, parse, url, fetch_datum, inlinks):
        for keyword in self.extractor.keywords(parse.text):
            doc.add("keywords", keyword, stored=True, indexed=True, tokenized=False)
        return doc


class OPICScoringFilter(ScoringFilter):
    """Scales the boost by the crawl db score raised to ``scorePower``."""

    def __init__(self, config=None):
        super().__init__(config)
        self.score_power = config.score_power if config is not None else 0.5

    def indexer_score(self, url, doc, db_datum, fetch_datum, parse, inlinks, init_score):
        score = db_datum.score
        if score is None or score < 0:
            raise ScoringError(f"Invalid crawl db score {score!r} for {url}")
        return (float(score) ** self.score_power) * init_score
