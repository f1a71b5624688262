"""Storage collaborators: the ingestion source store and message sinks."""

from .eml_sink import EmlDirectorySink, MessageSink
from .source_store import InMemorySourceStore, SourceStore, SQLiteSourceStore

__all__ = [
    "EmlDirectorySink",
    "MessageSink",
    "InMemorySourceStore",
    "SourceStore",
    "SQLiteSourceStore",
]
