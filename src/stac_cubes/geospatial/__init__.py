"""
Geospatial operations for building raster data cubes from STAC catalogs.

This module contains:
- STAC operations (search, feature conversion, URL signing)
- Image collections built from STAC features
- Cube views, lazy raster cubes and their operators
- Windowed COG reads (storage access layer)
"""
