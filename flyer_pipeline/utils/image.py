"""Product image optimization: resize the generated image into WebP variants."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageOps

from flyer_pipeline.errors import ValidationError

WEBP_QUALITY = 85


@dataclass(frozen=True)
class Variant:
    name: str
    width: int
    height: int
    quality: int = WEBP_QUALITY


CLEAN_VARIANTS: tuple[Variant, ...] = (
    Variant("original", 800, 600, quality=95),
    Variant("optimized", 600, 450),
    Variant("thumbnail", 200, 150, quality=80),
)

RESOLUTION_VARIANTS: tuple[Variant, ...] = (
    Variant("1x", 400, 400),
    Variant("2x", 800, 800),
    Variant("3x", 1200, 1200),
    Variant("custom", 828, 440),
)


@dataclass(frozen=True)
class OptimizedImages:
    clean: dict[str, bytes]
    resolutions: dict[str, bytes]
    quality_score: float


def load_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except Exception as exc:
        raise ValidationError("Generated image could not be decoded") from exc
    return img


def quality_score(img: Image.Image) -> float:
    """Rough 0-1 quality estimate from size alone."""
    score = 1.0
    width, height = img.size
    if width < 200 or height < 200:
        score -= 0.3
    if width > 4000 or height > 4000:
        score -= 0.2
    return max(0.0, score)


def _flatten(img: Image.Image) -> Image.Image:
    """Composite transparency onto white; WebP variants are served opaque."""
    if img.mode in ("RGBA", "LA", "P"):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


def render_variant(img: Image.Image, variant: Variant) -> bytes:
    """Fit ``img`` inside the variant's box and encode it as WebP."""
    resized = ImageOps.contain(img, (variant.width, variant.height), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    resized.save(buf, format="WEBP", quality=variant.quality, method=4)
    return buf.getvalue()


def optimize_product_image(data: bytes) -> OptimizedImages:
    img = _flatten(load_image(data))
    return OptimizedImages(
        clean={variant.name: render_variant(img, variant) for variant in CLEAN_VARIANTS},
        resolutions={variant.name: render_variant(img, variant) for variant in RESOLUTION_VARIANTS},
        quality_score=quality_score(img),
    )


def image_to_bytes(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()
