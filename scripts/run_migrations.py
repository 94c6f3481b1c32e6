#!/usr/bin/env python
"""Script to run database migrations."""

from lumo.core.logging import configure_logging
from lumo.migrations.runner import upgrade_to_head

if __name__ == "__main__":
    configure_logging()
    print("Running database migrations...")
    revision = upgrade_to_head()
    print(f"Migrations completed, database at {revision}")
