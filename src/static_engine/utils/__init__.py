"""Utility helpers for static-engine."""
