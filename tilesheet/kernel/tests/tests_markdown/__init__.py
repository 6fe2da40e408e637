"""
Tilesheet Markdown Codec Test Suite

Test Files:
1. test_markdown_parse.py - Blocks, config block, collapsed and multiline fields
2. test_markdown_round_trip.py - serialize → parse keeps every field value
"""
