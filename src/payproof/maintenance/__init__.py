"""Maintenance jobs."""

from .orphans import SweepReport, sweep_orphaned_blobs

__all__ = ["SweepReport", "sweep_orphaned_blobs"]
