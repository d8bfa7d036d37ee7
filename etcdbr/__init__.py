"""Data directory validation, snapshot selection, defragmentation and metrics for etcd backups."""

__version__ = "0.1.0"