import pytest
from PIL import Image


def write_image(path, size, color, mode="RGB"):
    img = Image.new(mode, size, color)
    img.save(path)
    return path


@pytest.fixture
def scenario_dir(tmp_path):
    """
    Three solid images with aspect 2:1, 1:1 and 3:1 plus a text file that
    sorts between the first and second image.
    """
    d = tmp_path / "images"
    d.mkdir()
    write_image(d / "a.png", (400, 200), (255, 0, 0))
    (d / "a_notes.txt").write_text("not an image\n")
    write_image(d / "b.png", (400, 400), (0, 255, 0))
    write_image(d / "c.png", (300, 100), (0, 0, 255))
    return d


@pytest.fixture
def gradient_canvas():
    """
    Deterministic 96x64 RGBA canvas with many distinct colors and a fully
    transparent right quarter.
    """
    w, h = 96, 64
    img = Image.new("RGBA", (w, h))
    px = img.load()
    for y in range(h):
        for x in range(w):
            a = 0 if x >= 72 else 255
            px[x, y] = ((x * 37 + y * 17) % 256, (x * 13 + y * 53) % 256, (x * 97 + y * 19) % 256, a)
    return img
