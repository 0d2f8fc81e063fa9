"""
Configuration, logging, database and error types.
"""
