"""
Wardrobe Imagery Pipeline

Two flows over the same components:
1. Upload - validate, optional background removal, resize, store
2. Generate - text-to-image, mandatory background removal, store
"""
