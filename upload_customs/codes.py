from __future__ import annotations

from enum import IntEnum


class UploadErrorCode(IntEnum):
    """Per-file error codes a host places in the ``error`` attribute of an
    upload descriptor.  The numbering follows PHP's ``UPLOAD_ERR_*`` constants,
    which is what every ``$_FILES``-shaped structure carries.
    """

    OK = 0
    INI_SIZE = 1
    FORM_SIZE = 2
    PARTIAL = 3
    NO_FILE = 4
    # 5 is unassigned.
    NO_TMP_DIR = 6
    CANT_WRITE = 7
    EXTENSION = 8


#: Codes caused by the client.  These become ``UploadError`` records.
CLIENT_CODES = frozenset(
    (
        UploadErrorCode.INI_SIZE,
        UploadErrorCode.FORM_SIZE,
        UploadErrorCode.PARTIAL,
        UploadErrorCode.NO_FILE,
    )
)

#: Codes caused by the server.  These raise ``ServerProblemException``.
SERVER_CODES = frozenset(
    (
        UploadErrorCode.NO_TMP_DIR,
        UploadErrorCode.CANT_WRITE,
        UploadErrorCode.EXTENSION,
    )
)
