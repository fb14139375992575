"""
SQLite persistence for jobs, quota windows and usage records.
"""
