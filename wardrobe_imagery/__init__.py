"""
Wardrobe Imagery Pipeline

Upload and prompt-to-image flows for wardrobe item images.
"""

__version__ = "1.0.0"
