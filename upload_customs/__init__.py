# This is the canonical package information.
__license__ = "Apache"

# We get the version from a sub-file that can be automatically generated.
from ._version import __version__
from .channel import UploadChannel
from .codes import UploadErrorCode
from .config import UploadConfig
from .entities import ErrorKind, UploadError, UploadFile
from .exceptions import (
    CustomsError,
    OutOfRangeError,
    SecurityConcernException,
    ServerProblemException,
    StructuralMismatchError,
    UnsupportedOperation,
    UploadException,
)
from .iterator import UploadIterator, classify, gather, resolve_names, walk

__all__ = (
    "__version__",
    "CustomsError",
    "ErrorKind",
    "OutOfRangeError",
    "SecurityConcernException",
    "ServerProblemException",
    "StructuralMismatchError",
    "UnsupportedOperation",
    "UploadChannel",
    "UploadConfig",
    "UploadError",
    "UploadErrorCode",
    "UploadException",
    "UploadFile",
    "UploadIterator",
    "classify",
    "gather",
    "resolve_names",
    "walk",
)
