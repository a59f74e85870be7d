from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from app.errors import WatermarkFailure
from app.services.business_settings import WatermarkConfig


def _position(base: tuple[int, int], mark: tuple[int, int], config: WatermarkConfig) -> tuple[int, int]:
    base_w, base_h = base
    mark_w, mark_h = mark
    pad_x = round(base_w * config.padding / 100)
    pad_y = round(base_h * config.padding / 100)
    if config.placement == "bottom-right":
        return base_w - mark_w - pad_x, base_h - mark_h - pad_y
    if config.placement == "bottom-left":
        return pad_x, base_h - mark_h - pad_y
    if config.placement == "top-right":
        return base_w - mark_w - pad_x, pad_y
    if config.placement == "top-left":
        return pad_x, pad_y
    return (base_w - mark_w) // 2, (base_h - mark_h) // 2


def apply_watermark(image_bytes: bytes, overlay_bytes: bytes, config: WatermarkConfig) -> bytes:
    """Composite the overlay onto the image and return JPEG bytes.

    The overlay is scaled to ``config.scale`` percent of the base width keeping
    its aspect ratio; transparent areas of the base become white.
    """
    try:
        with Image.open(BytesIO(image_bytes)) as base_src, Image.open(BytesIO(overlay_bytes)) as mark_src:
            base = ImageOps.exif_transpose(base_src).convert("RGBA")
            mark = mark_src.convert("RGBA")

            mark_w = max(1, round(base.width * config.scale / 100))
            mark_h = max(1, round(mark.height * mark_w / mark.width))
            mark = mark.resize((mark_w, mark_h), Image.LANCZOS)
            if config.opacity < 1:
                alpha = mark.getchannel("A").point(lambda a: round(a * config.opacity))
                mark.putalpha(alpha)

            canvas = Image.new("RGBA", base.size, (255, 255, 255, 255))
            canvas.alpha_composite(base)
            layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
            layer.paste(mark, _position(base.size, mark.size, config), mark)
            canvas.alpha_composite(layer)

            out = BytesIO()
            canvas.convert("RGB").save(out, format="JPEG", quality=90)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise WatermarkFailure(f"Could not apply watermark: {exc}") from exc
