"""
Stage Crawler

A distributed web crawler split into independent stages that coordinate
through a message bus and a shared identifier store.
"""

__version__ = "1.0.0"
__description__ = "A distributed, horizontally scalable web crawler pipeline"
