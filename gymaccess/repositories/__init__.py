"""
Data access layer. All queries for the engine go through these repositories.
"""
