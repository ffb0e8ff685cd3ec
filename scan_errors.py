# scan_errors.py
# ----------------------------------------------------------------------
# Exceptions raised by the ID scanning pipeline.
#
# Only ImageLoadError, MissingRequiredField and ConfigError are meant to reach a caller,
# and even those are folded into a ScanResult by Scan_ID.process_scan.
# "No barcode found" is an outcome (DispatchReason), not an exception.
# ----------------------------------------------------------------------

from __future__ import annotations


class ScanError(Exception):
    """Base class for every error raised by the scanner modules."""


class OutOfBounds(ScanError, IndexError):
    """A pixel was requested outside the image extent."""

    def __init__(self, x: int, y: int, width: int, height: int):
        super().__init__(f"pixel ({x}, {y}) outside {width}x{height} image")
        self.x = x
        self.y = y
        self.width = width
        self.height = height


class InvalidBitstream(ScanError, ValueError):
    """A bitstream contained something other than '0' / '1'."""


class RemoteServiceUnavailable(ScanError):
    """Remote decode service timed out, refused, or answered with garbage."""

    def __init__(self, service: str, reason: str):
        super().__init__(f"{service}: {reason}")
        self.service = service
        self.reason = reason


class MissingRequiredField(ScanError):
    """A parsed identity record lacks a field downstream matching depends on."""

    def __init__(self, field_name: str):
        super().__init__(f"Invalid or missing {field_name} in parsed data")
        self.field_name = field_name


class ImageLoadError(ScanError):
    """The enhancement step could not read or decode the image file."""


class ConfigError(ScanError, ValueError):
    """Environment settings or the heuristics file are malformed or out of range."""
