"""Perceptual fingerprinting of sleeve images."""

from coverscan.hashing.codec import HashCodec, hamming_distance, similarity

__all__ = ["HashCodec", "hamming_distance", "similarity"]
