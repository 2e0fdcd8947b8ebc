"""
Integration tests for ParkBook

These run the services end to end against the real stores: the SQLAlchemy
store on an in-memory SQLite database, and the in-memory store under
concurrent callers.
"""
