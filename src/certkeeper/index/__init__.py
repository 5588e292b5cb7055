"""In-memory index of certificates and their relationships."""

from certkeeper.index.metadata_index import MetadataIndex

__all__ = ["MetadataIndex"]
