"""Exception hierarchy for the composition pipeline.

Only ``FatalInputError`` (and its subclasses) stops a run. Everything else is
contained to a single row, a single placement, or the metadata patch step.
"""


class UvifyError(Exception):
    """Base class for all errors raised by uvify."""


class FatalInputError(UvifyError, ValueError):
    """Input that makes the whole run impossible (no background, no rows, bad layout)."""


class LayoutError(FatalInputError):
    """Layout that cannot place a QR code inside the background."""


class CsvFormatError(FatalInputError):
    """Links CSV that is unreadable or lacks the required columns."""


class QrEncodeError(UvifyError, ValueError):
    """Link that cannot be encoded as a QR symbol."""


class JpegStructureError(UvifyError, ValueError):
    """Encoded JPEG whose segment structure could not be parsed."""


class ShardClosedError(UvifyError, RuntimeError):
    """Entry added to an archive shard that was already finalized."""


class RunCancelledError(UvifyError):
    """Run stopped at a batch boundary at the caller's request."""
