"""
Tilesheet Session Test Suite

Test Files:
1. test_session_lifecycle.py - open / close / switching documents
2. test_session_edits.py - apply_edit, undo/redo, publish order
3. test_session_persistence.py - Debounced saves and storage backends
4. test_session_edit_validation.py - Structural edit validation
"""
