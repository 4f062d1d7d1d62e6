"""Bulk product import pipeline.

Upload -> analyze -> map -> validate -> recover -> execute, one session per uploaded file.
"""

__version__ = "0.1.0"
