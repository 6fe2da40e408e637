"""Tilesheet Render Scheduler Test Suite."""
