import numpy as np
import pytest

pytest.importorskip("cv2")

from coverscan.capture import VideoCaptureFrameSource, center_square_crop, encode_jpeg
from coverscan.errors import FetchError
from coverscan.hashing import HashCodec


class FakeCapture:
    def __init__(self, frames, opened=True):
        self.frames = list(frames)
        self.opened = opened
        self.released = False

    def isOpened(self):
        return self.opened

    def read(self):
        if not self.frames:
            return False, None
        return True, self.frames.pop(0)

    def release(self):
        self.released = True


def test_center_square_crop():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)

    cropped = center_square_crop(frame, 0.75)

    assert cropped.shape == (360, 360, 3)
    frame[60:420, 140:500] = 255
    assert center_square_crop(frame, 0.75).min() == 255


def test_center_square_crop_rejects_bad_input():
    with pytest.raises(ValueError):
        center_square_crop(np.zeros((0, 0, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        center_square_crop(np.zeros((10, 10, 3), dtype=np.uint8), 1.5)


def test_capture_returns_hashable_jpeg():
    frame = np.zeros((240, 320, 3), dtype=np.uint8)
    frame[:, 160:] = 255
    fake = FakeCapture([frame])
    source = VideoCaptureFrameSource(capture=fake, crop_fraction=0.75)

    jpeg = source.capture()

    assert jpeg[:2] == b"\xff\xd8"
    assert len(HashCodec().compute_fingerprint(jpeg)) == 16
    source.release()
    assert fake.released


def test_capture_errors():
    with pytest.raises(FetchError):
        VideoCaptureFrameSource(capture=FakeCapture([], opened=False)).capture()
    with pytest.raises(FetchError):
        VideoCaptureFrameSource(capture=FakeCapture([])).capture()


def test_encode_jpeg_produces_bytes():
    frame = np.full((32, 32, 3), 128, dtype=np.uint8)

    assert len(encode_jpeg(frame, quality=50)) > 0
