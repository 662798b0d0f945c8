"""Replica-count decisions from utilization samples."""

from kubesync.autoscale.engine import AutoscaleEngine

__all__ = ["AutoscaleEngine"]
