"""Collection Replicator: mirrors MongoDB collections from a source to a target store."""

__version__ = "0.1.0"
