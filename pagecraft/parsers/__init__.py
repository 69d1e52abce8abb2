# Parsers package
from .snapshot_parser import SnapshotParser, GeneratedReply

__all__ = ["SnapshotParser", "GeneratedReply"]
