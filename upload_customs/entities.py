from __future__ import annotations

import logging
import shutil
from enum import Enum
from typing import TYPE_CHECKING

from .codes import UploadErrorCode
from .config import UploadConfig
from .exceptions import ServerProblemException

if TYPE_CHECKING:  # pragma: no cover
    from .channel import UploadChannel


class ErrorKind(Enum):
    """Why a client-side upload failed."""

    OVERSIZE_SERVER = UploadErrorCode.INI_SIZE
    OVERSIZE_FORM = UploadErrorCode.FORM_SIZE
    PARTIAL = UploadErrorCode.PARTIAL
    NO_FILE = UploadErrorCode.NO_FILE


class UploadFile:
    """A file that was uploaded successfully.

    The file still lives at its temporary server path, which the host removes
    at the end of the request: call :meth:`move_to` to keep it.
    """

    __slots__ = ("_field_name", "_client_filename", "_server_file", "_declared_type", "_size")

    def __init__(
        self,
        field_name: str,
        client_filename: str | None,
        server_file: str,
        declared_type: str | None = None,
        size: int | None = None,
    ) -> None:
        self._field_name = field_name
        self._client_filename = client_filename
        self._server_file = server_file
        self._declared_type = declared_type
        self._size = size

    @property
    def field_name(self) -> str:
        """The HTML name of the form element, e.g. ``documents[cv]``.

        This approximates the name given in the form.  Hosts mangle top-level
        names containing ``.`` or spaces into ``_``, and the auto-append syntax
        ``foo[]`` comes back as ``foo[0]``, ``foo[1]`` and so on.
        """
        return self._field_name

    @property
    def client_filename(self) -> str | None:
        """The file name the client gave, if any.

        Only use this for display: nothing guarantees it is safe.
        """
        return self._client_filename

    @property
    def server_file(self) -> str:
        """The temporary path holding the upload."""
        return self._server_file

    @property
    def declared_type(self) -> str | None:
        """The content type the client claimed.  Not verified."""
        return self._declared_type

    @property
    def size(self) -> int | None:
        return self._size

    def move_to(self, path: str, channel: UploadChannel | None = None) -> str:
        """Move the temporary file to its final destination.

        With a channel the move goes through
        :meth:`UploadChannel.move_uploaded_file`, which refuses paths the
        channel did not receive itself.

        Returns:
            The destination path.

        Raises:
            ServerProblemException: If the file could not be moved.
        """
        logger = logging.getLogger(__name__)

        if channel is not None:
            if not channel.move_uploaded_file(self._server_file, path):
                raise ServerProblemException(self._field_name, ServerProblemException.CANT_MOVE)
            return path

        try:
            shutil.move(self._server_file, path)
        except OSError:
            logger.exception("Error moving %r to %r", self._server_file, path)
            raise ServerProblemException(self._field_name, ServerProblemException.CANT_MOVE)
        return path

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UploadFile):
            return (
                self.field_name == other.field_name
                and self.client_filename == other.client_filename
                and self.server_file == other.server_file
            )
        else:
            return NotImplemented

    def __hash__(self) -> int:
        return hash((self._field_name, self._client_filename, self._server_file))

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(field_name={self.field_name!r}, "
            f"client_filename={self.client_filename!r}, server_file={self.server_file!r})"
        )


class UploadError:
    """A file that did not upload because the client did something wrong.

    The possible causes are:

    - the client did not upload a file,
    - the client uploaded a partial, incomplete file,
    - the client sent more bytes than either the form or the server allowed.

    Problems caused by the server, or suspicious uploads, are not represented
    by this class: they raise an :class:`~upload_customs.exceptions.UploadException`.
    """

    __slots__ = ("_field_name", "_code", "_size")

    messages: dict[UploadErrorCode, str] = {
        UploadErrorCode.INI_SIZE: "The file size exceeds the server-allowed limit.",
        UploadErrorCode.FORM_SIZE: "The file size exceeds the form-allowed upload limit.",
        UploadErrorCode.PARTIAL: "The file was only partially uploaded.",
        UploadErrorCode.NO_FILE: "No file was uploaded.",
    }

    def __init__(self, field_name: str, code: int, size: int | str | None = 0) -> None:
        self._field_name = field_name
        self._code = UploadErrorCode(int(code))
        if self._code not in self.messages:
            raise ValueError(f"Not a client upload error code: {code!r}")
        self._size = int(size) if size else 0

    @classmethod
    def change_error_message(cls, code: int, message: str) -> None:
        """Change the text associated with a client error code, for example to
        localize it.  Only the four client codes have a message.

        Raises:
            KeyError: If the code does not have a message.
        """
        try:
            code = UploadErrorCode(code)
        except ValueError:
            raise KeyError(code)
        if code not in cls.messages:
            raise KeyError(code)
        cls.messages[code] = message

    @property
    def field_name(self) -> str:
        """The HTML name of the form element.  See :attr:`UploadFile.field_name`."""
        return self._field_name

    @property
    def code(self) -> UploadErrorCode:
        return self._code

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self._code)

    @property
    def size(self) -> int:
        """The size the host reported for the upload."""
        return self._size

    @property
    def error_message(self) -> str:
        return self.messages[self._code]

    def is_too_big(self) -> bool:
        """Did the file exceed either the server limit or the form limit?"""
        return self._code in (UploadErrorCode.INI_SIZE, UploadErrorCode.FORM_SIZE)

    def maximum_size(self, config: UploadConfig | None = None) -> int | None:
        """The limit that was exceeded, in bytes, or None if the file was not
        too big.
        """
        if config is None:
            config = UploadConfig()

        if self._code == UploadErrorCode.INI_SIZE:
            return config.system_max_upload_bytes()
        elif self._code == UploadErrorCode.FORM_SIZE:
            return config.form_max_upload_bytes()
        else:
            return None

    def is_partial(self) -> bool:
        return self._code == UploadErrorCode.PARTIAL

    @property
    def received(self) -> int | None:
        """How many bytes arrived before a partial upload was cut off."""
        if self.is_partial():
            return self._size
        return None

    def not_uploaded(self) -> bool:
        return self._code == UploadErrorCode.NO_FILE

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UploadError):
            return self.field_name == other.field_name and self.code == other.code and self.size == other.size
        else:
            return NotImplemented

    def __hash__(self) -> int:
        return hash((self._field_name, self._code, self._size))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(field_name={self.field_name!r}, kind={self.kind.name}, size={self.size!r})"
