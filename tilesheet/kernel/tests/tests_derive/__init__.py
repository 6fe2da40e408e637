"""
Tilesheet Derivation Test Suite

Test Files:
1. test_derive_filter_sort.py - Filter operators, quick filter, sort, tables, galleries
2. test_derive_lanes.py - Lane comparator, lanes, boards, cards
"""
