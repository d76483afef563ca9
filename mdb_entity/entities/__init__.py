"""
Entity mapping: collection name resolution and document conversion.
"""

from .codec import from_document, populate, to_document
from .resolver import CollectionNamed, CollectionResolver, camel_to_snake, resolve_collection

__all__ = [
    # Resolution
    "CollectionNamed",
    "CollectionResolver",
    "camel_to_snake",
    "resolve_collection",
    # Conversion
    "to_document",
    "from_document",
    "populate",
]
