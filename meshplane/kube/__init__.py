"""Thin layer over the orchestration API and its untyped objects."""
