"""
MagickConverter - Probes source images and converts them to tiled pyramid TIFFs.

Any converter used by the worker pool provides the same three methods:
probe(source_path), convert(source_path, output_path) and output_size(output_path).
Every failure surfaces as ConversionFailure.
"""

import logging
import os
from typing import NamedTuple, Optional

import sh
from PIL import Image, UnidentifiedImageError

from .exceptions import ConversionFailure


class Dimensions(NamedTuple):
    width: int
    height: int


class MagickConverter:
    """
    Converts images with ImageMagick and reads dimensions with Pillow.
    """

    def __init__(
        self,
        tile_size: int = 256,
        compression: str = 'lzw',
        timeout: float = 600.0,
        binary: str = 'convert',
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize converter.

        Args:
            tile_size: Tile edge in pixels
            compression: TIFF compression passed to -compress
            timeout: Seconds before a conversion is killed
            binary: ImageMagick executable name or path
            logger: Optional logger instance
        """
        self.tile_size = tile_size
        self.compression = compression
        self.timeout = timeout
        self.binary = binary
        self.logger = logger or logging.getLogger(__name__)

    def probe(self, source_path: str) -> Dimensions:
        """
        Read pixel dimensions from the image header.

        Args:
            source_path: Path to the source image

        Returns:
            Dimensions of the image
        """
        if not os.path.isfile(source_path):
            raise ConversionFailure(f"Source file not found: {source_path}", source_path)
        try:
            with Image.open(source_path) as img:
                width, height = img.size
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise ConversionFailure(f"Cannot read image dimensions: {e}", source_path) from e
        self.logger.debug(f"Probed {source_path}: {width}x{height}")
        return Dimensions(width, height)

    def build_arguments(self, source_path: str, output_path: str) -> list:
        """Return the convert arguments producing a tiled pyramid TIFF."""
        return [
            source_path,
            '-define', f"tiff:tile-geometry={self.tile_size}x{self.tile_size}",
            '-compress', self.compression,
            f"ptif:{output_path}",
        ]

    def convert(self, source_path: str, output_path: str) -> str:
        """
        Convert a source image to a tiled pyramid TIFF.

        Args:
            source_path: Path to the source image
            output_path: Destination path for the tiled output

        Returns:
            The output path
        """
        if not os.path.isfile(source_path):
            raise ConversionFailure(f"Source file not found: {source_path}", source_path)

        output_dir = os.path.dirname(output_path)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        try:
            command = sh.Command(self.binary)
            command(*self.build_arguments(source_path, output_path), _timeout=self.timeout)
        except sh.CommandNotFound as e:
            raise ConversionFailure(f"Converter not installed: {self.binary}", source_path) from e
        except sh.TimeoutException as e:
            raise ConversionFailure(
                f"Conversion timed out after {self.timeout:.0f}s", source_path
            ) from e
        except sh.ErrorReturnCode as e:
            stderr = e.stderr.decode('utf-8', 'replace').strip() if e.stderr else ''
            raise ConversionFailure(
                f"Conversion failed (exit {e.exit_code}): {stderr or 'no output'}", source_path
            ) from e

        if not os.path.isfile(output_path):
            raise ConversionFailure(f"Converter produced no output: {output_path}", source_path)

        self.logger.debug(f"Converted {source_path} -> {output_path}")
        return output_path

    def output_size(self, output_path: str) -> int:
        """Return the size of a produced output file in bytes."""
        try:
            return os.path.getsize(output_path)
        except OSError as e:
            raise ConversionFailure(f"Cannot stat output {output_path}: {e}") from e
