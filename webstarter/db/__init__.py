"""Database connection, declarative base and bookkeeping models."""
