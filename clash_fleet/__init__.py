"""
Split one Clash configuration into a fleet of single-proxy Clash instances.

This package exposes typed helpers for partitioning proxies, rewriting rules,
materializing per-instance configs, rendering the HAProxy front end, and
launching the resulting processes.
"""

from __future__ import annotations

__all__ = [
    "config",
    "errors",
    "haproxy",
    "lifecycle",
    "main",
    "materializer",
    "partition",
    "rendering",
    "schema",
    "types",
]
