"""Kitsune booking backend: scheduling, booking lifecycle and access control."""

__version__ = "0.1.0"
