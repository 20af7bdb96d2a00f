"""Scaffold templates for `dform init`."""

from __future__ import annotations

# Directories every new project starts with
PROJECT_DIRS = ("definitions", "includes")

GITIGNORE_TEMPLATE = """\
node_modules/
.df-credentials.json
"""
