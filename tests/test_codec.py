import io

import pytest
from PIL import Image

from coverscan.errors import DecodeError, LengthMismatch
from coverscan.hashing import HashCodec, hamming_distance, similarity


def test_fingerprint_is_deterministic_hex(make_cover):
    codec = HashCodec()
    image = make_cover(1)

    first = codec.compute_fingerprint(image)
    second = codec.compute_fingerprint(image)

    assert first == second
    assert len(first) == codec.hex_length == 16
    int(first, 16)


def test_reencoding_keeps_fingerprint_close(make_cover):
    codec = HashCodec()
    png = codec.compute_fingerprint(make_cover(3, fmt="PNG"))
    jpeg_hi = codec.compute_fingerprint(make_cover(3, fmt="JPEG", quality=95))
    jpeg_lo = codec.compute_fingerprint(make_cover(3, fmt="JPEG", quality=40))
    large = codec.compute_fingerprint(make_cover(3, fmt="PNG", size=512))

    assert hamming_distance(png, jpeg_hi) <= 4
    assert hamming_distance(png, jpeg_lo) <= 4
    assert hamming_distance(png, large) <= 4


def test_different_covers_are_far_apart(make_cover):
    codec = HashCodec()
    original = codec.compute_fingerprint(make_cover(7))
    inverted = codec.compute_fingerprint(make_cover(7, invert=True))
    other = codec.compute_fingerprint(make_cover(8))

    assert hamming_distance(original, inverted) >= 60
    assert hamming_distance(original, other) > 15


def test_non_square_input_is_normalized():
    codec = HashCodec()
    buffer = io.BytesIO()
    Image.new("RGB", (300, 120), color=(200, 30, 30)).save(buffer, format="PNG")

    fingerprint = codec.compute_fingerprint(buffer.getvalue())

    assert len(fingerprint) == 16


def test_decode_errors():
    codec = HashCodec()
    with pytest.raises(DecodeError):
        codec.compute_fingerprint(b"")
    with pytest.raises(DecodeError):
        codec.compute_fingerprint(b"definitely not an image")


def test_fingerprint_file(tmp_path, make_cover):
    codec = HashCodec()
    path = tmp_path / "cover.png"
    path.write_bytes(make_cover(4))

    assert codec.fingerprint_file(path) == codec.compute_fingerprint(make_cover(4))


def test_distance_is_symmetric_and_zero_on_self():
    a = "ff00ff00ff00ff00"
    b = "0f00ff00ff00ff01"

    assert hamming_distance(a, a) == 0
    assert hamming_distance(a, b) == hamming_distance(b, a) == 5
    assert hamming_distance("0000000000000000", "ffffffffffffffff") == 64


def test_distance_rejects_mismatched_fingerprints():
    with pytest.raises(LengthMismatch):
        hamming_distance("ff00ff00ff00ff00", "ff00")
    with pytest.raises(LengthMismatch):
        hamming_distance("zz00ff00ff00ff00", "ff00ff00ff00ff00")
    # LengthMismatch is also a ValueError
    with pytest.raises(ValueError):
        hamming_distance("ff", "ff00")


def test_larger_grid_fingerprints_do_not_mix(make_cover):
    small = HashCodec(8).compute_fingerprint(make_cover(5))
    large = HashCodec(16).compute_fingerprint(make_cover(5))

    assert len(large) == 64
    assert HashCodec(16).total_bits == 256
    with pytest.raises(LengthMismatch):
        hamming_distance(small, large)


def test_similarity_bounds_and_monotonicity():
    assert similarity(0, 64) == 1.0
    assert similarity(64, 64) == 0.0
    assert similarity(100, 64) == 0.0
    assert similarity(8, 64) == pytest.approx(0.875)
    scores = [similarity(d, 64) for d in range(0, 65)]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= score <= 1.0 for score in scores)
    assert HashCodec().similarity(16) == pytest.approx(0.75)
    with pytest.raises(ValueError):
        similarity(1, 0)
