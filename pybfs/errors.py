from __future__ import annotations


class BfsError(ValueError):
    """Base class for every archive error raised by :mod:`pybfs`."""


class MalformedHeader(BfsError):

    def __init__(self, message: str, offset: int | None = None, index: int | None = None):
        context = []
        if index is not None:
            context.append("entry %d" % index)
        if offset is not None:
            context.append("offset 0x%X" % offset)
        if context:
            message = "%s [%s]" % (message, ", ".join(context))
        super().__init__(message)
        self.offset = offset
        self.index = index


class UnsupportedRevision(BfsError):

    def __init__(self, revision, message: str | None = None):
        if message is None:
            message = "No reader is implemented for the %s format" % (revision,)
        super().__init__(message)
        self.revision = revision


class UnsupportedMethod(BfsError):

    def __init__(self, revision, method, index: int | None = None):
        message = "The %s format cannot store %s compressed entries" % (revision, method)
        if index is not None:
            message += " [entry %d]" % index
        super().__init__(message)
        self.revision = revision
        self.method = method
        self.index = index


class DecompressionError(BfsError):

    def __init__(self, method, reason: str):
        super().__init__("Failed to decompress %s data [%s]" % (method, reason))
        self.method = method


class SizeMismatch(BfsError):

    def __init__(self, expected: int, actual: int):
        super().__init__(
            "Decoded size does not match the recorded size [expected %d, got %d]" % (expected, actual)
        )
        self.expected = expected
        self.actual = actual


class MissingKey(BfsError):
    """Raised when an encrypted revision is processed without key material."""

    def __init__(self, profile: str):
        super().__init__(
            "No key material for the %r cipher profile, supply it in Keys.toml" % profile
        )
        self.profile = profile


class InvalidKey(BfsError):
    """Raised when key material has the wrong shape.  Never includes the key."""

    def __init__(self, profile: str, expected_length: int, actual_length: int):
        super().__init__(
            "Key for the %r cipher profile must be %d bytes long [got %d]"
            % (profile, expected_length, actual_length)
        )
        self.profile = profile
        self.expected_length = expected_length


class EntryOverflow(BfsError):

    def __init__(self, field: str, value: int, limit: int, index: int | None = None):
        message = "Value of %s does not fit the on-disk field [%d > %d]" % (field, value, limit)
        if index is not None:
            message += " [entry %d]" % index
        super().__init__(message)
        self.field = field
        self.value = value
        self.limit = limit
        self.index = index


class InvalidFilter(BfsError):

    def __init__(self, line: str, line_number: int, reason: str = "expected '+ glob' or '- glob'"):
        super().__init__("Invalid filter on line %d: %r [%s]" % (line_number, line, reason))
        self.line_number = line_number
