"""Image artifact store package.

This package contains modules for storing uploaded images by content,
deduplicating identical uploads, computing overlay placement and
compositing text or drawings onto stored images in place. The HTTP
endpoints in ``main.py`` are thin wrappers around :mod:`imagestore.service`.
See individual modules for details.
"""
