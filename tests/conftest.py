"""Shared pytest configuration and fixtures."""

import os

# Settings.from_env must not pick up a developer's environment
for name in [n for n in os.environ if n.startswith("PARLEY_")]:
    os.environ.pop(name)

pytest_plugins = ["parley.testing"]
