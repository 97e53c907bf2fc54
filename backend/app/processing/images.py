"""
WebP preview generation for image uploads (Pillow).

The preview fits inside max_width × max_height keeping the aspect ratio
and is never enlarged. EXIF orientation is applied first so phone photos
of receipts come out upright. Formats Pillow cannot decode (HEIC without
a plugin, corrupt files) yield None; previews are best-effort.
"""

from __future__ import annotations

import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

PREVIEW_MIME_TYPE = "image/webp"


def make_webp_preview(
    data:       bytes,
    max_width:  int = 1920,
    max_height: int = 1920,
    quality:    int = 85,
) -> bytes | None:
    try:
        with Image.open(io.BytesIO(data)) as opened:
            image = ImageOps.exif_transpose(opened)
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
            image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)

            out = io.BytesIO()
            image.save(out, format="WEBP", quality=quality, method=4)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.warning("Preview generation skipped: %s: %s", type(exc).__name__, exc)
        return None

    preview = out.getvalue()
    logger.debug("Preview generated | in=%d out=%d", len(data), len(preview))
    return preview
