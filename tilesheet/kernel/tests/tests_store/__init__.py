"""
Tilesheet Row Store Test Suite

Test Files:
1. test_store_materialize.py - Rows, formulas, row cap and formula limit
2. test_store_columns.py - Column insert / rename / remove / reorder / duplicate
3. test_store_rows.py - Identity lookups and row operations
"""
