"""Filesystem-level stages of the media build: extraction, image format,
answer file and driver injection, plus disk-space checks and command runners.
"""
