"""Test helper utilities for studio pipeline tests."""

from .fixture_fetcher import FixtureFetcher, orders_csv

__all__ = ["FixtureFetcher", "orders_csv"]
