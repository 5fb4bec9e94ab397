"""Utility modules shared by the storage gateway.

This package provides reusable utilities for:
- Retry patterns with exponential backoff
"""
