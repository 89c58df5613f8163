"""
Pattern memory core: configuration, SQLite persistence and the tiered PatternStore.
"""
