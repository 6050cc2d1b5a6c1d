"""Reconciling controllers and CSI response builders for ZFS-backed local persistent volumes."""

__version__ = "0.1.0"