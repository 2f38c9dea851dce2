from __future__ import annotations

import io
import logging
from typing import Optional

from PIL import Image, ImageOps

from .errors import PreprocessError
from .io_types import ImageRole
from .settings import PreprocessConfig
from .sources import ImageSource


logger = logging.getLogger(__name__)

AVATAR_BACKGROUND = (128, 128, 128)
GARMENT_BACKGROUND = (255, 255, 255)


class ImagePreprocessor:
    """
    Normalizes avatar and garment photos into provider-ready JPEG payloads.
    - Avatars: orientation fix, exact 3:4 portrait crop, fixed target size.
    - Garments: bounded size, alpha flattened, aspect ratio kept.
    """

    def __init__(self, source: Optional[ImageSource] = None, config: Optional[PreprocessConfig] = None) -> None:
        self.source = source or ImageSource()
        self.cfg = config or PreprocessConfig()

    def prepare(self, image_ref: str, role: ImageRole) -> bytes:
        return self.normalize(self.source.fetch_bytes(image_ref), role)

    def normalize(self, raw: bytes, role: ImageRole) -> bytes:
        try:
            with Image.open(io.BytesIO(raw)) as im:
                im.load()
                if role is ImageRole.AVATAR:
                    out = self._avatar(im)
                    quality = self.cfg.avatar_quality
                else:
                    out = self._garment(im)
                    quality = self.cfg.garment_quality
            buf = io.BytesIO()
            out.save(buf, format="JPEG", quality=quality)
            return buf.getvalue()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise PreprocessError(f"{role.value} preprocessing failed: {e}") from e

    def _avatar(self, im: Image.Image) -> Image.Image:
        im = ImageOps.exif_transpose(im)
        if im.width > im.height * self.cfg.landscape_ratio:
            # Landscape avatar: rotate the pixels 90 degrees clockwise into portrait
            logger.info("avatar %dx%d looks rotated, correcting orientation", im.width, im.height)
            im = im.transpose(Image.Transpose.ROTATE_270)

        if max(im.size) > self.cfg.max_source_side:
            im = im.copy()
            im.thumbnail((self.cfg.max_source_side, self.cfg.max_source_side), Image.Resampling.LANCZOS)

        target_w, target_h = self.cfg.avatar_width, self.cfg.avatar_height
        target_aspect = target_w / target_h
        w, h = im.size
        aspect = w / h
        if aspect > target_aspect:
            # Too wide: keep the centre
            crop_w = round(h * target_aspect)
            x = round((w - crop_w) / 2)
            im = im.crop((x, 0, x + crop_w, h))
        elif aspect < target_aspect:
            # Too tall: keep the top so the head stays in frame
            crop_h = round(w / target_aspect)
            im = im.crop((0, 0, w, crop_h))

        im = _flatten(im, AVATAR_BACKGROUND)
        return im.resize((target_w, target_h), Image.Resampling.LANCZOS)

    def _garment(self, im: Image.Image) -> Image.Image:
        im = _flatten(ImageOps.exif_transpose(im), GARMENT_BACKGROUND)
        limit = self.cfg.garment_max_size
        if im.width > limit or im.height > limit:
            im.thumbnail((limit, limit), Image.Resampling.LANCZOS)
        return im


def _flatten(im: Image.Image, background: tuple[int, int, int]) -> Image.Image:
    if im.mode == "P" and "transparency" in im.info:
        im = im.convert("RGBA")
    if im.mode in ("RGBA", "LA"):
        canvas = Image.new("RGB", im.size, background)
        canvas.paste(im.convert("RGBA"), mask=im.getchannel("A"))
        return canvas
    return im.convert("RGB")
