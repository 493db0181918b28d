"""Normalized query surface over Azure DevOps builds and Helix work items."""

__version__ = "0.1.0"
