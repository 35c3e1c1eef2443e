"""
Top‑level package for the League Registry API.

This file makes ``league_registry_api`` a Python package so that
modules within ``app`` can be imported using fully qualified names
like ``league_registry_api.app.main``.

The package provides no public exports; all functionality lives in
submodules under ``app``.
"""

__all__ = []
