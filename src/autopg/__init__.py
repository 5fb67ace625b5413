"""Provision PostgreSQL roles and databases declared in Docker container labels."""

__version__ = "0.1.0"
