"""Incremental asset pipeline and development server for static sites."""

__version__ = "0.1.0"
