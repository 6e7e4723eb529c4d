"""
Image Labeling Service - per-user image upload, thumbnailing and labeling

This service provides:
- Scoped upload, listing and deletion of each user's images
- Resized derivative generation on object creation
- Label extraction through an external recognition engine
- Reconciliation of partially processed or partially deleted images
"""

__version__ = "1.0.0"
__author__ = "Image Labeling Service Team"
