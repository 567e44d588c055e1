"""
coverscan: recognise record sleeves from a camera against a Discogs catalog.

Subpackages: `hashing` (perceptual fingerprints), `catalog` (snapshot store
and upstream sources), `recognition` (matcher and capture scheduler).
"""

__all__ = [
    "capture",
    "catalog",
    "config",
    "errors",
    "hashing",
    "io_utils",
    "recognition",
    "types",
]
