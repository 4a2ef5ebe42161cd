"""Bundled demo StoryMap and scene content."""
