"""
Claims module: ownership claims and their review workflow.
"""
