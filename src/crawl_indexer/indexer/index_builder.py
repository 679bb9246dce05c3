"""
Builds a Whoosh index in a local working directory.

Documents are analyzed before they reach Whoosh: the analyzer is chosen per
document from its ``lang`` field, so one index can hold documents analyzed
with different language rules. Indexed fields store the resulting terms
joined by a separator character and split by a fixed tokenizer in the schema.
"""
import itertools
import logging
import os
import traceback
from collections import Counter

from whoosh import index as whoosh_index
from whoosh.analysis import LanguageAnalyzer, RegexTokenizer, StandardAnalyzer
from whoosh.codec.whoosh3 import W3Codec
from whoosh.fields import STORED, TEXT, Schema
from whoosh.lang import has_stemmer
from whoosh.reading import SegmentReader

from crawl_indexer.common.config import IndexerConfig
from crawl_indexer.common.errors import IndexWriteError

logger = logging.getLogger("indexer.builder")

LANGUAGE_FIELD = "lang"
TERM_SEPARATOR = "\x1f"


def _supports_language(lang):
    try:
        return has_stemmer(lang)
    except Exception as e:
        logger.debug(f"No stemmer lookup for language {lang!r}: {e}")
        return False


class Analyzer:
    """A Whoosh analyzer selected for a language."""

    def __init__(self, name, analyzer, language=None):
        self.name = name
        self.analyzer = analyzer
        self.language = language

    def tokenize(self, text):
        """Yield the indexed terms of a text."""
        if not text:
            return
        for token in self.analyzer(text):
            yield token.text

    def __repr__(self):
        return self.name


class AnalyzerFactory:
    """Per-worker analyzer lookup keyed by language tag.

    Languages Whoosh can stem get a LanguageAnalyzer; anything else,
    including a missing language, gets the default StandardAnalyzer.
    """

    def __init__(self, config=None):
        self.config = config
        self.default = Analyzer("StandardAnalyzer", StandardAnalyzer())
        self._analyzers = {}

    def get(self, lang):
        key = (lang or '').strip().lower()
        if not key:
            return self.default
        if key not in self._analyzers:
            # en-US, pt_BR: fall back to the primary subtag
            primary = key.split('-')[0].split('_')[0]
            if _supports_language(key):
                self._analyzers[key] = Analyzer(f"LanguageAnalyzer({key})",
                                                LanguageAnalyzer(key), language=key)
            elif primary != key and primary:
                self._analyzers[key] = self.get(primary)
            else:
                logger.debug(f"No analyzer for language {key!r}, using default")
                self._analyzers[key] = self.default
        return self._analyzers[key]


class SegmentMergePolicy:
    """Merges the smallest segments once enough of them have accumulated.

    When at least ``merge_factor`` segments hold no more than
    ``max_merge_docs`` documents each, the ``merge_factor`` smallest of them
    are merged into one. Larger segments are left alone.
    """

    def __init__(self, merge_factor, max_merge_docs=None):
        self.merge_factor = merge_factor
        self.max_merge_docs = max_merge_docs

    def select(self, segments):
        eligible = [seg for seg in segments
                    if self.max_merge_docs is None or seg.doc_count_all() <= self.max_merge_docs]
        size = max(self.merge_factor, 2)
        if len(eligible) < size:
            return []
        return sorted(eligible, key=lambda seg: seg.doc_count_all())[:size]

    def __call__(self, writer, segments):
        to_merge = self.select(segments)
        if not to_merge:
            return segments

        logger.debug(f"Merging {len(to_merge)} segments")
        for seg in to_merge:
            reader = SegmentReader(writer.storage, writer.schema, seg)
            writer.add_reader(reader)
            reader.close()
        merged = set(id(seg) for seg in to_merge)
        return [seg for seg in segments if id(seg) not in merged]


class IndexBuilder:
    """Accumulates documents into a local index owned by one worker."""

    def __init__(self, ix, working_dir, config, analyzer_factory):
        self.ix = ix
        self.working_dir = working_dir
        self.config = config
        self.analyzer_factory = analyzer_factory
        self.merge_policy = SegmentMergePolicy(config.merge_factor, config.max_merge_docs)
        self.doc_count = 0
        self.analyzer_counts = Counter()
        self.closed = False
        self._writer = None
        self._buffered = 0
        self._field_kinds = {}

    @classmethod
    def open(cls, working_dir, config=None, analyzer_factory=None):
        """Create an empty index in ``working_dir``.

        Args:
            working_dir (str): Local directory the index is built in
            config (IndexerConfig): Writer settings
            analyzer_factory (AnalyzerFactory): Analyzer lookup for this worker

        Returns:
            IndexBuilder: The builder handle
        """
        config = config or IndexerConfig()
        try:
            os.makedirs(working_dir, exist_ok=True)
            ix = whoosh_index.create_in(working_dir, Schema())
        except Exception as e:
            raise IndexWriteError(f"Cannot create index in {working_dir}: {e}") from e

        logger.info(f"Index opened in {working_dir} (mergeFactor={config.merge_factor}, "
                    f"minBufferedDocs={config.min_buffered_docs}, maxMergeDocs={config.max_merge_docs}, "
                    f"termIndexInterval={config.term_index_interval}, "
                    f"maxIndexedTokensPerField={config.max_indexed_tokens_per_field})")
        return cls(ix, working_dir, config, analyzer_factory or AnalyzerFactory(config))

    def _get_writer(self):
        if self.closed:
            raise IndexWriteError("Index builder is closed")
        if self._writer is None:
            self._writer = self.ix.writer(
                codec=W3Codec(blocklimit=self.config.term_index_interval),
                compound=self.config.use_compound_file,
            )
        return self._writer

    def _field_type(self, kind):
        if kind[0] == "stored":
            return STORED()
        _, stored, tokenized = kind
        return TEXT(analyzer=RegexTokenizer(r"[^\x1f]+"), stored=stored, phrase=tokenized)

    def _new_fields(self, document):
        """Check field settings against the schema and return fields it lacks."""
        new_fields = []
        for name in document.field_names():
            if name.startswith("_") or " " in name:
                raise IndexWriteError(f"Invalid field name: {name!r}")
            entries = document.get_fields(name)
            kind = entries[0].kind
            if any(entry.kind != kind for entry in entries):
                raise IndexWriteError(f"Field {name!r} mixes stored/indexed settings")
            known = self._field_kinds.get(name)
            if known is None:
                new_fields.append((name, kind))
            elif known != kind:
                raise IndexWriteError(f"Field {name!r} was indexed as {known}, now {kind}")
        return new_fields

    def _extend_schema(self, new_fields):
        # Whoosh only accepts new fields on a writer that holds no documents.
        if self._buffered:
            self.flush()
        writer = self._get_writer()
        for name, kind in new_fields:
            writer.add_field(name, self._field_type(kind))
            self._field_kinds[name] = kind
        return writer

    def _terms(self, analyzer, values, tokenized):
        if tokenized:
            terms = itertools.chain.from_iterable(analyzer.tokenize(value) for value in values)
        else:
            terms = (value for value in values if value)
        return list(itertools.islice(terms, self.config.max_indexed_tokens_per_field))

    def _document_fields(self, document, analyzer):
        fields = {}
        for name in document.field_names():
            kind = self._field_kinds[name]
            values = document.get_values(name)
            stored_value = values[0] if len(values) == 1 else values
            if kind[0] == "stored":
                fields[name] = stored_value
                continue
            _, stored, tokenized = kind
            fields[name] = TERM_SEPARATOR.join(self._terms(analyzer, values, tokenized))
            if stored:
                fields["_stored_" + name] = stored_value
        fields["_boost"] = document.boost
        return fields

    def add(self, document):
        """Add a document, analyzing it with the analyzer for its language.

        Raises:
            IndexWriteError: The document could not be written
        """
        lang = document.get(LANGUAGE_FIELD)
        analyzer = self.analyzer_factory.get(lang)
        logger.info(f" Indexing [{document.get('url')}] with analyzer {analyzer} ({lang})")

        try:
            new_fields = self._new_fields(document)
            if new_fields:
                writer = self._extend_schema(new_fields)
            else:
                writer = self._get_writer()
            writer.add_document(**self._document_fields(document, analyzer))
        except IndexWriteError:
            raise
        except Exception as e:
            logger.error(f"Error adding document {document.get('url')}: {e}")
            logger.error(traceback.format_exc())
            raise IndexWriteError(f"Cannot add document {document.get('url')}: {e}") from e

        self.doc_count += 1
        self.analyzer_counts[analyzer.name] += 1
        self._buffered += 1
        if self._buffered >= self.config.min_buffered_docs:
            self.flush()

    def flush(self):
        """Write buffered documents as a new segment and apply the merge policy."""
        if self._writer is None:
            return
        logger.debug(f"Flushing {self._buffered} buffered documents")
        writer, self._writer = self._writer, None
        self._buffered = 0
        try:
            writer.commit(mergetype=self.merge_policy)
        except Exception as e:
            raise IndexWriteError(f"Cannot flush segment: {e}") from e

    def optimize(self):
        """Commit pending documents and merge every segment into one, then close."""
        try:
            writer = self._get_writer()
            self._writer = None
            self._buffered = 0
            writer.commit(optimize=True)
        except IndexWriteError:
            raise
        except Exception as e:
            raise IndexWriteError(f"Cannot optimize index: {e}") from e
        finally:
            self.closed = True

    def abort(self):
        """Discard buffered documents and release the writer."""
        writer, self._writer = self._writer, None
        self.closed = True
        if writer is not None:
            try:
                writer.cancel()
            except Exception as e:
                logger.warning(f"Error cancelling index writer: {e}")
