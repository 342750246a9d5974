"""Tracking, resume/rollback and health monitoring for book import pipeline runs."""

__version__ = "0.1.0"
