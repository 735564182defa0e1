"""Configuration, logging, sessions, middleware and error rendering."""
