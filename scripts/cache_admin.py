#!/usr/bin/env python
"""Manage the compute cache table: migrate, sweep, purge, stats."""

from lumo.cache.admin import main

if __name__ == "__main__":
    raise SystemExit(main())
