"""
Image transform utilities built on Pillow.

Both transforms are best-effort: ``optimize_image`` returns the input bytes
unchanged when it cannot process them, and ``generate_thumbnail`` returns
``None``. Neither ever fails an upload.
"""

import io
from typing import Optional, Tuple

import structlog
from PIL import Image, ImageOps
from prometheus_client import Histogram

logger = structlog.get_logger(__name__)

image_processing_time = Histogram(
    'lms_uploads_image_processing_seconds',
    'Time spent transforming images',
    ['operation']
)

OPTIMIZABLE_FORMATS = ('JPEG', 'PNG', 'WEBP')

FORMAT_ALIASES = {
    'JPG': 'JPEG',
    'JPEG': 'JPEG',
    'PNG': 'PNG',
    'WEBP': 'WEBP',
}


def _flatten_alpha(image: Image.Image) -> Image.Image:
    """Paste an image with transparency onto white so it can be saved as JPEG."""
    if image.mode == 'P':
        image = image.convert('RGBA')

    if image.mode in ('RGBA', 'LA'):
        background = Image.new('RGB', image.size, (255, 255, 255))
        background.paste(image, mask=image.split()[-1])
        return background

    if image.mode != 'RGB':
        return image.convert('RGB')
    return image


def _save(image: Image.Image, image_format: str, quality: int) -> bytes:
    save_kwargs = {'format': image_format}

    if image_format == 'JPEG':
        image = _flatten_alpha(image)
        save_kwargs.update(quality=quality, optimize=True)
    elif image_format == 'WEBP':
        save_kwargs['quality'] = quality
    elif image_format == 'PNG':
        save_kwargs['optimize'] = True

    buffer = io.BytesIO()
    image.save(buffer, **save_kwargs)
    return buffer.getvalue()


def get_image_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """Return ``(width, height)`` or ``None`` when ``data`` is not a readable image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except Exception:
        return None


def optimize_image(
    data: bytes,
    quality: int = 80,
    max_width: int = 1920,
    max_height: int = 1080,
    output_format: Optional[str] = None
) -> bytes:
    """
    Downscale an image to fit inside ``max_width`` x ``max_height`` and re-encode it.

    Aspect ratio is preserved and smaller images are never enlarged. EXIF
    orientation is applied before resizing. Only JPEG, PNG and WebP sources are
    re-encoded; anything else (GIF animations, unknown data) is returned as is.

    Args:
        data: Source image bytes
        quality: Encoder quality (1-100) for JPEG and WebP
        max_width: Maximum output width
        max_height: Maximum output height
        output_format: Target format; defaults to the source format

    Returns:
        Optimized bytes, or ``data`` unchanged if the image cannot be processed
    """
    try:
        with image_processing_time.labels(operation='optimize').time():
            with Image.open(io.BytesIO(data)) as source:
                source_format = (source.format or '').upper()
                if source_format not in OPTIMIZABLE_FORMATS:
                    return data

                target_format = FORMAT_ALIASES.get(
                    (output_format or source_format).upper(), source_format
                )

                image = ImageOps.exif_transpose(source)
                original_size = image.size
                if image.width > max_width or image.height > max_height:
                    image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)

                optimized = _save(image, target_format, quality)

        logger.debug(
            "Image optimized",
            original_size=f"{original_size[0]}x{original_size[1]}",
            optimized_size=f"{image.width}x{image.height}",
            original_bytes=len(data),
            optimized_bytes=len(optimized),
            output_format=target_format
        )
        return optimized

    except Exception as e:
        logger.warning("Image optimization failed, keeping original", error=str(e))
        return data


def generate_thumbnail(
    data: bytes,
    width: int = 300,
    height: int = 300,
    quality: int = 80,
    enabled: bool = True
) -> Optional[bytes]:
    """
    Produce a ``width`` x ``height`` JPEG thumbnail, cover-fit and centered.

    Returns:
        Thumbnail bytes, or ``None`` when disabled or when the source cannot
        be decoded
    """
    if not enabled:
        return None

    try:
        with image_processing_time.labels(operation='thumbnail').time():
            with Image.open(io.BytesIO(data)) as source:
                image = ImageOps.exif_transpose(source)
                thumbnail = ImageOps.fit(
                    image,
                    (width, height),
                    method=Image.Resampling.LANCZOS,
                    centering=(0.5, 0.5)
                )
                return _save(thumbnail, 'JPEG', quality)

    except Exception as e:
        logger.warning("Thumbnail generation failed", error=str(e))
        return None
