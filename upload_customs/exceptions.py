from __future__ import annotations

from .codes import UploadErrorCode

# Sentinel for an unknown_code that was not given.
_unset = object()


class CustomsError(Exception):
    """Base error class for everything this package raises."""


class UploadException(CustomsError):
    """Raised when the *server* had a problem with an upload, or the *client*
    appears to be bypassing the normal upload safeguards.

    Unlike :class:`~upload_customs.entities.UploadError`, which is a record
    describing something the client did wrong, an ``UploadException`` aborts
    the construction of the whole collection.
    """

    #: The message used when a subclass does not know anything better.
    default_message = "There was a problem with your upload"

    def __init__(self, field_name: str | None, code: int = 0, message: str | None = None) -> None:
        self.field_name = field_name
        self.code = code
        self.message = message if message is not None else self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.field_name is None:
            return self.message
        return f"{self.message} (field {self.field_name!r})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(field_name={self.field_name!r}, code={self.code!r})"


class ServerProblemException(UploadException):
    """The server could not store an upload.

    It's worth logging the temporary directory, free disk space and the
    configuration along with this exception, for their diagnostic value::

        try:
            uploads = UploadIterator.from_channel(channel)
        except ServerProblemException:
            logger.exception("tmpdir=%s", config.upload_working_path())
            raise
    """

    #: The uploaded file could not be moved to its final destination.
    CANT_MOVE = 100

    #: File uploads are switched off in the configuration.
    UPLOADS_DISABLED = 101

    messages = {
        UploadErrorCode.NO_TMP_DIR: "No temporary folder in which to hold the upload",
        UploadErrorCode.CANT_WRITE: "Failed to write upload to temporary location",
        UploadErrorCode.EXTENSION: "An extension blocked the upload",
        CANT_MOVE: "Cannot move the uploaded file",
        UPLOADS_DISABLED: "File uploads are disabled",
    }

    def __init__(self, field_name: str | None, code: int = 0) -> None:
        super().__init__(field_name, code, self.messages.get(code))


class SecurityConcernException(UploadException):
    """The upload is suspicious.

    Log the session identifier, the client address and anything else that
    identifies the request before re-raising::

        try:
            uploads = UploadIterator.from_channel(channel)
        except SecurityConcernException:
            logger.warning("remote_addr=%s", environ.get("REMOTE_ADDR"))
            raise
    """

    NOT_UPLOADED = 1
    UNKNOWN_CODE = 2

    def __init__(self, field_name: str | None, code: int = 0, unknown_code: object = _unset) -> None:
        # Codes above UNKNOWN_CODE carry the offending host code as an offset.
        # Values that do not fit that scheme (negative or non-numeric) are
        # passed explicitly.
        if unknown_code is _unset:
            unknown_code = code - self.UNKNOWN_CODE if code >= self.UNKNOWN_CODE else None

        #: The unrecognized host error code, when there was one.
        self.unknown_code = unknown_code

        if code == self.NOT_UPLOADED:
            message = "The file was not uploaded through the upload channel"
        elif code >= self.UNKNOWN_CODE:
            message = f"The file had an unknown upload error code: {self.unknown_code!r}"
        else:
            message = None
        super().__init__(field_name, code, message)


class StructuralMismatchError(CustomsError, ValueError):
    """The attribute trees of a descriptor disagree in shape.

    This is a defect of the descriptor itself, not of the uploaded file.
    """

    def __init__(self, field_name: str, attribute: str, reason: str) -> None:
        self.field_name = field_name
        self.attribute = attribute
        self.reason = reason
        super().__init__(f"Malformed upload descriptor at {field_name!r} ({attribute}): {reason}")


class OutOfRangeError(CustomsError, IndexError):
    """A position outside of an upload collection was requested."""


class UnsupportedOperation(CustomsError, TypeError):
    """An upload collection was asked to change.  Collections are read-only."""
