"""
Tilesheet History Test Suite

Test Files:
1. test_history_cells.py - Cell transactions, rollback, undo/redo
2. test_history_rows.py - Row and column transactions
"""
