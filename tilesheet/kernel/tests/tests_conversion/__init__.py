"""Tilesheet Conversion Guard Test Suite."""
