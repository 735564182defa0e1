"""webstarter: server-rendered FastAPI starter application."""

__version__ = "1.0.0"
