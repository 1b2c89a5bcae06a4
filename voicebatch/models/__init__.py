"""Database models."""

from .batch_snapshot import BatchSnapshot
