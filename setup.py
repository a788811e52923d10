"""Setuptools build hooks for einloop."""

from __future__ import annotations

from setuptools import setup

# Pure Python package; metadata lives in pyproject.toml and the grammar file
# ships as package data.
setup()
