"""The host side of an upload: receiving files and building the descriptor.

An :class:`UploadChannel` owns the descriptor of one request together with
the set of temporary paths it really received.  That set is what makes a
channel-built descriptor trustworthy, and what
:meth:`UploadChannel.is_uploaded_file` checks against.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from typing import TYPE_CHECKING, Any

from python_multipart.exceptions import FileError
from python_multipart.multipart import create_form_parser, parse_options_header

from .codes import UploadErrorCode
from .config import UploadConfig
from .exceptions import ServerProblemException
from .iterator import ATTRIBUTES

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Mapping
    from typing import Protocol

    from python_multipart.multipart import FieldProtocol, FileProtocol

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...


# Canonical integers become integer keys, "01" stays a string.
_rx_index = re.compile(r"^(0|-?[1-9]\d*)$")

_mangle_table = str.maketrans({" ": "_", ".": "_", "[": "_"})


def parse_html_name(name: str) -> tuple[str, list[str | int | None]]:
    """Split an HTML form name into its base and its bracketed keys.

    The base has ``.``, spaces and a stray ``[`` replaced by ``_``, the way
    hosts have always mangled form names.  An empty pair of brackets (the
    auto-append syntax ``foo[]``) gives a ``None`` key, and canonical integer
    keys are converted to ``int``::

        >>> parse_html_name("my.file[docs][]")
        ('my_file', ['docs', None])
    """
    name = name.lstrip(" ")
    start = name.find("[")
    if start == -1 or "]" not in name[start:]:
        return name.translate(_mangle_table), []

    base = name[:start].translate(_mangle_table)
    keys: list[str | int | None] = []
    pos = start
    while pos < len(name) and name[pos] == "[":
        end = name.find("]", pos)
        if end == -1:
            break
        key = name[pos + 1 : end]
        if key == "":
            keys.append(None)
        elif _rx_index.match(key):
            keys.append(int(key))
        else:
            keys.append(key)
        pos = end + 1

    return base, keys


def _next_index(node: Mapping[Any, Any]) -> int:
    indexes = [k for k in node if isinstance(k, int)]
    return max(indexes) + 1 if indexes else 0


def _assign(tree: dict[Any, Any], path: list[Any], value: Any) -> None:
    for key in path[:-1]:
        child = tree.get(key)
        if not isinstance(child, dict):
            child = tree[key] = {}
        tree = child
    tree[path[-1]] = value


class UploadChannel:
    """The uploads one request delivered.

    :ivar files: The descriptor, in the format
        :class:`~upload_customs.iterator.UploadIterator` reads.
    :ivar form: The non-file fields of the request, when it was parsed by
        :meth:`from_request`.
    :ivar config: The :class:`~upload_customs.config.UploadConfig` used while
        receiving, with ``form`` attached.
    """

    def __init__(self, files: dict[str, Any] | None = None, uploaded: Iterable[str] = ()) -> None:
        self.logger = logging.getLogger(__name__)
        self.files: dict[str, Any] = files if files is not None else {}
        self.config = UploadConfig()
        self.form: dict[str, Any] = self.config.form
        self._uploaded = {os.path.abspath(p) for p in uploaded}

    @classmethod
    def from_request(
        cls,
        headers: Mapping[str, Any],
        stream: SupportsRead,
        config: UploadConfig | None = None,
        chunk_size: int = 1048576,
    ) -> UploadChannel:
        """Receive the files of a ``multipart/form-data`` request.

        Every file is written to :meth:`UploadConfig.upload_working_path` and
        registered.  Files over the server limit, or over a ``MAX_FILE_SIZE``
        field that precedes them in the form, are discarded and registered with
        the matching error code.  Files past :meth:`UploadConfig.max_file_uploads`
        are dropped.

        Requests that are not multipart give an empty channel.

        Raises:
            ServerProblemException: If file uploads are disabled.
            python_multipart.exceptions.FormParserError: If the body is malformed.
        """
        if config is None:
            config = UploadConfig()
        if not config.is_enabled():
            raise ServerProblemException(None, ServerProblemException.UPLOADS_DISABLED)

        channel = cls()
        channel.config = UploadConfig(config.config, form=config.form)
        channel.form = channel.config.form

        content_type, _ = parse_options_header(headers.get("Content-Type"))
        if content_type != b"multipart/form-data":
            channel.logger.debug("Not a multipart request: %r", content_type)
            return channel

        receiver = _Receiver(channel, channel.config)
        parser = create_form_parser(
            dict(headers),
            receiver.on_field,
            receiver.on_file,
            config={
                "UPLOAD_DIR": channel.config.upload_working_path(),
                "UPLOAD_DELETE_TMP": False,
            },
        )

        content_length: int | float | None = headers.get("Content-Length")
        if content_length is not None:
            content_length = int(content_length)
        else:
            content_length = float("inf")
        bytes_read = 0

        try:
            while True:
                max_readable = int(min(content_length - bytes_read, chunk_size))
                buff = stream.read(max_readable)

                parser.write(buff)
                bytes_read += len(buff)

                if len(buff) != max_readable or bytes_read == content_length:
                    break

            parser.finalize()
        finally:
            # The parser finalizes the last file after its callback, so files
            # are only closed once it is done with them.
            receiver.close()
        return channel

    @classmethod
    def from_environ(cls, environ: Mapping[str, Any], config: UploadConfig | None = None) -> UploadChannel:
        """Receive the files of a WSGI request."""
        headers = {"Content-Type": environ.get("CONTENT_TYPE", "")}
        if environ.get("CONTENT_LENGTH"):
            headers["Content-Length"] = environ["CONTENT_LENGTH"]
        return cls.from_request(headers, environ["wsgi.input"], config)

    def register(
        self,
        html_name: str,
        filename: str,
        content_type: str,
        size: int,
        tmp_name: str,
        error: int = UploadErrorCode.OK,
    ) -> str | None:
        """Record one upload in the descriptor.

        Successful uploads also mark ``tmp_name`` as genuinely received.

        Returns:
            The field name the upload was stored under, e.g. ``docs[0]``, or
            None if the HTML name was unusable.
        """
        base, keys = parse_html_name(html_name)
        if not base:
            self.logger.warning("Ignoring upload with unusable name %r", html_name)
            return None

        values = {
            "name": filename,
            "type": content_type,
            "size": size,
            "tmp_name": tmp_name,
            "error": int(error),
        }

        if not keys:
            self.files[base] = values
            path: list[Any] = []
        else:
            entry = self.files.get(base)
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), dict):
                entry = self.files[base] = {attribute: {} for attribute in ATTRIBUTES}

            # Resolve the auto-append keys against the name tree, so all five
            # trees get the same path.
            path = []
            node: Any = entry["name"]
            for key in keys:
                if key is None:
                    key = _next_index(node)
                path.append(key)
                node = node.get(key) if isinstance(node, dict) else None
                if not isinstance(node, dict):
                    node = {}

            for attribute in ATTRIBUTES:
                _assign(entry[attribute], path, values[attribute])

        if error == UploadErrorCode.OK and tmp_name:
            self._uploaded.add(os.path.abspath(tmp_name))

        field_name = base + "".join(f"[{key}]" for key in path)
        self.logger.debug("Registered %r (error %d)", field_name, error)
        return field_name

    def is_uploaded_file(self, path: object) -> bool:
        """Was ``path`` received through this channel?"""
        if not isinstance(path, (str, bytes, os.PathLike)) or not path:
            return False
        return os.path.abspath(os.fsdecode(path)) in self._uploaded

    def move_uploaded_file(self, path: str, destination: str) -> bool:
        """Move a received file to ``destination``.

        Paths this channel did not receive are refused.

        Returns:
            Whether the file was moved.
        """
        if not self.is_uploaded_file(path):
            self.logger.warning("Refusing to move %r: not an uploaded file", path)
            return False

        try:
            shutil.move(path, destination)
        except OSError:
            self.logger.exception("Error moving uploaded file %r to %r", path, destination)
            return False

        self._uploaded.discard(os.path.abspath(path))
        return True

    def close(self) -> None:
        """Remove the received files that were not moved away."""
        for path in sorted(self._uploaded):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError:
                self.logger.exception("Error removing temporary upload %r", path)
        self._uploaded.clear()

    def __enter__(self) -> UploadChannel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(fields={list(self.files)!r}, uploaded={len(self._uploaded)})"


class _Receiver:
    """Callbacks handed to the form parser by :meth:`UploadChannel.from_request`."""

    def __init__(self, channel: UploadChannel, config: UploadConfig) -> None:
        self.logger = logging.getLogger(__name__)
        self.channel = channel
        self.config = config
        self.received = 0
        self.max_uploads = config.max_file_uploads()
        self.system_max = config.system_max_upload_bytes()
        self.opened: list[FileProtocol] = []
        self.discarded: list[FileProtocol] = []

    def on_field(self, field: FieldProtocol) -> None:
        name = (field.field_name or b"").decode("utf-8", "replace")  # type: ignore[attr-defined]
        value = field.value  # type: ignore[attr-defined]
        self.config.form[name] = value.decode("utf-8", "replace") if value is not None else ""

    def on_file(self, file: FileProtocol) -> None:
        html_name = (file.field_name or b"").decode("utf-8", "replace")  # type: ignore[attr-defined]
        filename = (file.file_name or b"").decode("utf-8", "replace")  # type: ignore[attr-defined]
        content_type = getattr(file, "content_type", None) or ""
        if isinstance(content_type, bytes):
            content_type = content_type.decode("latin-1")
        size: int = file.size  # type: ignore[attr-defined]
        self.opened.append(file)

        if self.received >= self.max_uploads:
            self.logger.warning("Dropping %r: more than %d uploads", html_name, self.max_uploads)
            self._discard(file)
            return
        self.received += 1

        if not filename:
            self._discard(file)
            self.channel.register(html_name, "", "", 0, "", UploadErrorCode.NO_FILE)
            return

        if size > self.system_max:
            error = UploadErrorCode.INI_SIZE
        elif size > self.config.form_max_upload_bytes():
            error = UploadErrorCode.FORM_SIZE
        else:
            error = UploadErrorCode.OK

        if error != UploadErrorCode.OK:
            self.logger.info("Discarding %r: %d bytes is too big", html_name, size)
            self._discard(file)
            self.channel.register(html_name, filename, content_type, size, "", error)
            return

        try:
            if file.in_memory:  # type: ignore[attr-defined]
                file.flush_to_disk()  # type: ignore[attr-defined]
        except FileError:
            self.logger.exception("Error writing %r to disk", html_name)
            self._discard(file)
            self.channel.register(html_name, filename, content_type, size, "", UploadErrorCode.CANT_WRITE)
            return

        tmp_name = os.fsdecode(file.actual_file_name)  # type: ignore[attr-defined]
        self.logger.info("Received %r into %r", html_name, tmp_name)
        self.channel.register(html_name, filename, content_type, size, tmp_name)

    def _discard(self, file: FileProtocol) -> None:
        self.discarded.append(file)

    def close(self) -> None:
        """Close every file the parser handed over and delete the discarded ones."""
        for file in self.opened:
            file.close()
        for file in self.discarded:
            if file.in_memory or not file.actual_file_name:  # type: ignore[attr-defined]
                continue
            try:
                os.unlink(os.fsdecode(file.actual_file_name))  # type: ignore[attr-defined]
            except OSError:
                self.logger.exception("Error removing discarded upload")
        self.opened.clear()
        self.discarded.clear()
