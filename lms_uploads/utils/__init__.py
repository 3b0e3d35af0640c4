"""Shared utilities: exception hierarchy, file validation and image transforms."""
