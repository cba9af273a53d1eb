"""Integration with the external Bookshelf/Readarr library manager."""
