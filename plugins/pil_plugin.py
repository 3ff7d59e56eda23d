import logging
import os
from typing import List

from PIL import Image, ImageOps, features

from .base_plugin import BasePlugin, ThumbnailSize

_PIL_SAVE_FORMATS = {"webp": "WEBP", "jpeg": "JPEG", "png": "PNG"}


class PILPlugin(BasePlugin):
    """Plugin for handling standard image formats using PIL/Pillow."""

    def is_available(self) -> bool:
        """WebP output needs Pillow built with libwebp."""
        if self.output_format == "webp":
            return features.check("webp")
        return self.output_format in _PIL_SAVE_FORMATS

    def get_supported_formats(self) -> List[str]:
        """Return list of supported file extensions."""
        return ['.jpg', '.jpeg', '.png', '.gif', '.webp']

    def generate_thumbnail(self, image_path: str, size: ThumbnailSize, output_path: str) -> bool:
        """
        Fit the image inside size.width x size.height (never upscaling) and
        save it in the configured output format.
        Returns True if successful, False otherwise.
        """
        save_format = _PIL_SAVE_FORMATS.get(self.output_format)
        if save_format is None:
            logging.error(f"Unsupported thumbnail output format: {self.output_format}")
            return False
        try:
            with Image.open(image_path) as img:
                img = ImageOps.exif_transpose(img)
                if save_format == "JPEG" and img.mode not in ('RGB', 'L'):
                    img = img.convert('RGB')
                elif img.mode == 'P':
                    img = img.convert('RGBA')

                # thumbnail() only ever shrinks, matching fit-inside without enlargement
                img.thumbnail((size.width, size.height), Image.Resampling.LANCZOS)

                os.makedirs(os.path.dirname(output_path), exist_ok=True)
                img.save(output_path, save_format, quality=size.quality)
                logging.debug(f"Generated {size.name} thumbnail: {output_path}")
                return True

        except (OSError, ValueError) as e:
            logging.error(f"Error generating {size.name} thumbnail for {image_path}: {e}")
            return False
