"""
shelf: content tagging and taxonomy for a local document library.

Quick start:
    from shelf import Shelf

    shelf = Shelf()
    shelf.add(["~/Books"])
    for event in shelf.scan():
        print(event.to_dict())
"""

from .api import Shelf
from .types import JobSnapshot, LibraryItem, ProgressEvent

__version__ = "0.3.0"
__all__ = ["Shelf", "LibraryItem", "ProgressEvent", "JobSnapshot"]
