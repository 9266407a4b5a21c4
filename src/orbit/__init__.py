"""orbit: hot-reload dev loop for web-application templates."""

__version__ = "0.3.0"
