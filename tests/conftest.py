import io
import random

import pytest
from PIL import Image, ImageOps


def render_cover(seed: int, size: int = 128, cells: int = 8) -> Image.Image:
    """Blocky black/white sleeve whose cells line up with the hash grid."""
    rng = random.Random(seed)
    bits = [rng.choice((0, 255)) for _ in range(cells * cells)]
    bits[0], bits[1] = 0, 255
    small = Image.new("L", (cells, cells))
    small.putdata(bits)
    return small.resize((size, size), Image.NEAREST).convert("RGB")


def encode(image: Image.Image, fmt: str = "PNG", **kwargs) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


@pytest.fixture
def make_cover():
    def _make(seed: int, fmt: str = "PNG", size: int = 128, invert: bool = False, **kwargs) -> bytes:
        image = render_cover(seed, size=size)
        if invert:
            image = ImageOps.invert(image)
        return encode(image, fmt, **kwargs)

    return _make
