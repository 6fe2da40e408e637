"""Tilesheet Formula Test Suite.

1. test_formula_evaluate.py - Compilation and evaluation
2. test_value_parsers.py - Number, date and time recognition
"""
