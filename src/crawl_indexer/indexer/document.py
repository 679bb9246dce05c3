"""
Document model handed from the filter chains to the index builder.
"""
from dataclasses import dataclass


@dataclass
class Field:
    """One named value of a document.

    ``stored`` fields are kept in the index and returned with search hits.
    ``indexed`` fields are searchable; ``tokenized`` indexed fields go
    through the document's analyzer, untokenized ones are indexed as a
    single term.
    """

    name: str
    value: str
    stored: bool = True
    indexed: bool = True
    tokenized: bool = True

    @property
    def kind(self):
        if not self.indexed:
            return ("stored",)
        return ("indexed", self.stored, self.tokenized)


class Document:
    """Mutable accumulator of fields plus a relevance boost."""

    def __init__(self, boost=1.0):
        self.fields = []
        self.boost = boost

    def add(self, name, value, stored=True, indexed=True, tokenized=True):
        if not stored and not indexed:
            raise ValueError(f"Field {name!r} must be stored or indexed")
        self.fields.append(Field(name, str(value), stored=stored, indexed=indexed,
                                 tokenized=tokenized))
        return self

    def get(self, name):
        """First value of a field, or None."""
        for f in self.fields:
            if f.name == name:
                return f.value
        return None

    def get_values(self, name):
        return [f.value for f in self.fields if f.name == name]

    def get_fields(self, name):
        return [f for f in self.fields if f.name == name]

    def remove(self, name):
        """Remove every value of a field."""
        self.fields = [f for f in self.fields if f.name != name]

    def field_names(self):
        names = []
        for f in self.fields:
            if f.name not in names:
                names.append(f.name)
        return names

    def __contains__(self, name):
        return any(f.name == name for f in self.fields)

    def __iter__(self):
        return iter(self.fields)

    def __len__(self):
        return len(self.fields)

    def __repr__(self):
        return f"Document(boost={self.boost}, fields={self.field_names()})"
