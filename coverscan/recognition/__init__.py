"""Fingerprint matching and the continuous-capture scheduler."""
