"""Album Catalog - CLI helpers

- Output formatting for the command line (ui_helpers.py)
"""
