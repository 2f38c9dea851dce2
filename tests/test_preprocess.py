"""Tests for ImagePreprocessor and ImageSource."""

import io

import pytest
from PIL import Image

from helpers import FakeSession, data_uri, image_bytes, make_response
from orchestration.errors import FetchError, PreprocessError
from orchestration.io_types import ImageRole
from orchestration.preprocess import ImagePreprocessor
from orchestration.settings import PreprocessConfig
from orchestration.sources import ImageSource


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


class TestAvatar:

    def test_landscape_becomes_768x1024_portrait(self):
        out = ImagePreprocessor().normalize(image_bytes((1200, 900)), ImageRole.AVATAR)
        im = _open(out)
        assert im.format == "JPEG"
        assert im.size == (768, 1024)

    def test_tall_image_keeps_the_top(self):
        # Top half red, bottom half blue: a top-anchored crop keeps mostly red
        im = Image.new("RGB", (300, 1000), (0, 0, 255))
        im.paste((255, 0, 0), (0, 0, 300, 500))
        buf = io.BytesIO()
        im.save(buf, format="PNG")

        out = _open(ImagePreprocessor().normalize(buf.getvalue(), ImageRole.AVATAR))

        assert out.size == (768, 1024)
        r, _g, b = out.convert("RGB").getpixel((384, 900))
        assert r > 200 and b < 60

    def test_transparency_is_flattened_on_grey(self):
        raw = image_bytes((300, 400), mode="RGBA", color=(0, 0, 0, 0))
        out = _open(ImagePreprocessor().normalize(raw, ImageRole.AVATAR)).convert("RGB")
        r, g, b = out.getpixel((10, 10))
        assert abs(r - 128) < 6 and abs(g - 128) < 6 and abs(b - 128) < 6

    def test_exif_orientation_is_applied(self):
        # Stored landscape, left red and right blue; Orientation=6 puts red on top once rotated
        im = Image.new("RGB", (1000, 900), (0, 0, 255))
        im.paste((255, 0, 0), (0, 0, 500, 900))
        exif = Image.Exif()
        exif[0x0112] = 6
        buf = io.BytesIO()
        im.save(buf, format="JPEG", exif=exif.tobytes())

        out = _open(ImagePreprocessor().normalize(buf.getvalue(), ImageRole.AVATAR)).convert("RGB")

        assert out.size == (768, 1024)
        r, _g, b = out.getpixel((100, 100))
        assert r > 200 and b < 60
        r, _g, b = out.getpixel((100, 900))
        assert b > 200 and r < 60

    def test_oversized_source_is_scaled_first(self, monkeypatch):
        sizes = []
        original = Image.Image.thumbnail

        def spy(self, size, *args, **kwargs):
            sizes.append(tuple(size))
            return original(self, size, *args, **kwargs)

        monkeypatch.setattr(Image.Image, "thumbnail", spy)
        out = _open(ImagePreprocessor().normalize(image_bytes((5000, 3000)), ImageRole.AVATAR))

        assert out.size == (768, 1024)
        assert sizes == [(4000, 4000)]

    def test_custom_target(self):
        pre = ImagePreprocessor(config=PreprocessConfig(avatar_width=384, avatar_height=512))
        assert _open(pre.normalize(image_bytes((900, 900)), ImageRole.AVATAR)).size == (384, 512)


class TestGarment:

    def test_large_garment_is_bounded(self):
        out = _open(ImagePreprocessor().normalize(image_bytes((2048, 1536)), ImageRole.GARMENT))
        assert out.size == (1024, 768)

    def test_small_garment_keeps_its_size(self):
        out = _open(ImagePreprocessor().normalize(image_bytes((400, 300)), ImageRole.GARMENT))
        assert out.size == (400, 300)

    def test_transparency_is_flattened_on_white(self):
        raw = image_bytes((100, 100), mode="RGBA", color=(0, 0, 0, 0))
        out = _open(ImagePreprocessor().normalize(raw, ImageRole.GARMENT)).convert("RGB")
        assert min(out.getpixel((50, 50))) > 245


class TestFailures:

    def test_undecodable_bytes_raise_preprocess_error(self):
        with pytest.raises(PreprocessError):
            ImagePreprocessor().normalize(b"not an image", ImageRole.AVATAR)

    def test_prepare_fetches_then_normalizes(self):
        out = ImagePreprocessor().prepare(data_uri(image_bytes((1200, 900))), ImageRole.AVATAR)
        assert _open(out).size == (768, 1024)


class TestImageSource:

    def test_data_uri(self):
        raw = image_bytes((10, 10))
        assert ImageSource().fetch_bytes(data_uri(raw)) == raw

    def test_local_path(self, tmp_path):
        path = tmp_path / "a.png"
        path.write_bytes(b"abc")
        assert ImageSource().fetch_bytes(str(path)) == b"abc"

    def test_url(self):
        session = FakeSession({("GET", "/a.jpg"): make_response(200, text="img")})
        assert ImageSource(session=session).fetch_bytes("https://cdn.example.com/a.jpg") == b"img"

    def test_url_not_found(self):
        session = FakeSession({("GET", "/a.jpg"): make_response(404, text="")})
        with pytest.raises(FetchError):
            ImageSource(session=session).fetch_bytes("https://cdn.example.com/a.jpg")

    def test_directory_is_a_fetch_error(self, tmp_path):
        with pytest.raises(FetchError):
            ImageSource().fetch_bytes(str(tmp_path))

    @pytest.mark.parametrize("ref", ["", "data:text/plain,hello", "/no/such/file.png"])
    def test_unresolvable(self, ref):
        with pytest.raises(FetchError):
            ImageSource().fetch_bytes(ref)
