"""
Database package
SQLAlchemy engine and models, pydantic schemas, Redis auto-save client
"""
