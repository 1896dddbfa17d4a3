"""Flattening of ``$_FILES``-shaped upload descriptors.

A descriptor maps every top-level form field to five parallel attributes::

    {
        "docs": {
            "name":     {"cv": "cv.pdf",     "photos": {0: "a.png"}},
            "type":     {"cv": "application/pdf", "photos": {0: "image/png"}},
            "size":     {"cv": 5120,         "photos": {0: 1024}},
            "tmp_name": {"cv": "/tmp/up1",   "photos": {0: "/tmp/up2"}},
            "error":    {"cv": 0,            "photos": {0: 0}},
        }
    }

and this module turns it into the flat list of records ``docs[cv]`` and
``docs[photos][0]``, each one an :class:`~upload_customs.entities.UploadFile`
or an :class:`~upload_customs.entities.UploadError`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, NamedTuple

from .codes import CLIENT_CODES, SERVER_CODES, UploadErrorCode
from .entities import UploadError, UploadFile
from .exceptions import (
    OutOfRangeError,
    SecurityConcernException,
    ServerProblemException,
    StructuralMismatchError,
    UnsupportedOperation,
    UploadException,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterator

    from .channel import UploadChannel

    Descriptor = Mapping[Any, Mapping[str, Any]]
    Upload = UploadFile | UploadError


#: The attributes every descriptor entry carries.  ``name`` comes first: its
#: tree is the model the other four must follow.
ATTRIBUTES = ("name", "type", "size", "tmp_name", "error")

_rx_keys_lookup = re.compile(r"\[(.*?)\]")
_rx_integer = re.compile(r"^-?\d+$")

# Sentinel for keys that are not there.
_missing = object()


class RawUpload(NamedTuple):
    """The five leaf values gathered for one field, untransformed."""

    name: Any
    type: Any
    size: Any
    tmp_name: Any
    error: Any


def _is_branch(value: object) -> bool:
    return isinstance(value, (Mapping, list, tuple))


def _items(node: Any) -> Iterator[tuple[Any, Any]]:
    if isinstance(node, Mapping):
        return iter(node.items())
    return enumerate(node)


def _lookup(node: Any, key: Any) -> Any:
    """Return ``node[key]``, treating ``"2"`` and ``2`` as the same key."""
    if isinstance(node, Mapping):
        if key in node:
            return node[key]
        if isinstance(key, int) and not isinstance(key, bool):
            return node.get(str(key), _missing)
        if isinstance(key, str) and _rx_integer.match(key):
            return node.get(int(key), _missing)
        return _missing

    if isinstance(key, str) and _rx_integer.match(key):
        key = int(key)
    if isinstance(key, int) and 0 <= key < len(node):
        return node[key]
    return _missing


def _attribute(entry: Any, attribute: str, field_name: str) -> Any:
    if not isinstance(entry, Mapping):
        raise StructuralMismatchError(field_name, attribute, "entry is not a mapping")
    if attribute not in entry:
        raise StructuralMismatchError(field_name, attribute, "attribute is missing")
    return entry[attribute]


def tokenize(field_name: str) -> list[str]:
    """Split ``outer[inner][2]`` into ``["outer", "inner", "2"]``."""
    base, bracket, rest = field_name.partition("[")
    keys = [base]
    if bracket:
        keys.extend(_rx_keys_lookup.findall(bracket + rest))
    return keys


def resolve_names(descriptor: Descriptor) -> list[str]:
    """Find every field name the descriptor holds, in descriptor order.

    The ``name`` attribute of each top-level entry is the model: when it is a
    scalar the top-level key is the whole field name, when it is nested every
    leaf gets a bracketed name built from the path to it.
    """
    names: list[str] = []
    for key, entry in descriptor.items():
        base = str(key)
        model = _attribute(entry, "name", base)
        if _is_branch(model):
            _reduce(model, base, names)
        else:
            names.append(base)
    return names


def _reduce(node: Any, base: str, names: list[str]) -> None:
    for key, value in _items(node):
        sub_base = f"{base}[{key}]"
        if _is_branch(value):
            _reduce(value, sub_base, names)
        else:
            names.append(sub_base)


def _split(descriptor: Descriptor, field_name: str) -> tuple[Any, str, list[str]]:
    # A top-level key may itself contain brackets, so the longest key the
    # field name starts with wins.
    best: str | None = None
    entry: Any = _missing
    for key, value in descriptor.items():
        base = str(key)
        if field_name == base or field_name.startswith(base + "["):
            if best is None or len(base) > len(best):
                best, entry = base, value
    if best is None:
        return _missing, field_name, []
    return entry, best, tokenize(field_name[len(best) :])[1:]


def _check_siblings(field_name: str, node: tuple[Any, ...]) -> None:
    """Reject keys that the other trees hold and the name tree does not."""
    model = node[0]
    for attribute, value in zip(ATTRIBUTES[1:], node[1:]):
        if not _is_branch(value):
            continue
        for key, _ in _items(value):
            if _lookup(model, key) is _missing:
                raise StructuralMismatchError(f"{field_name}[{key}]", attribute, f"unexpected key {key!r}")


def gather(descriptor: Descriptor, field_name: str) -> RawUpload:
    """Collect the five attribute values stored at ``field_name``.

    The five attribute trees are walked together along the keys of the field
    name.  At every level the other trees must have the keys of the name
    tree, and no others.

    Raises:
        StructuralMismatchError: If any attribute tree does not have the
            shape the field name implies.
    """
    entry, path, keys = _split(descriptor, field_name)
    if entry is _missing:
        raise StructuralMismatchError(field_name, "name", "no such field")

    node = tuple(_attribute(entry, attribute, field_name) for attribute in ATTRIBUTES)
    for key in keys:
        if _is_branch(node[0]):
            _check_siblings(path, node)
        children = []
        for attribute, value in zip(ATTRIBUTES, node):
            if not _is_branch(value):
                raise StructuralMismatchError(field_name, attribute, f"no nested value for key {key!r}")
            child = _lookup(value, key)
            if child is _missing:
                raise StructuralMismatchError(field_name, attribute, f"missing key {key!r}")
            children.append(child)
        node = tuple(children)
        path = f"{path}[{key}]"

    for attribute, value in zip(ATTRIBUTES, node):
        if _is_branch(value):
            raise StructuralMismatchError(field_name, attribute, "expected a single value")

    return RawUpload(*node)


def walk(descriptor: Descriptor) -> Iterator[tuple[str, RawUpload]]:
    """Resolve names and gather values in a single pass.

    Every top-level entry is visited as one combined node holding all five
    attribute trees, and the node is descended with all five together.  The
    yielded names and order are the same as :func:`resolve_names`, and every
    value is the one :func:`gather` would return for that name.
    """
    for key, entry in descriptor.items():
        base = str(key)
        node = tuple(_attribute(entry, attribute, base) for attribute in ATTRIBUTES)
        yield from _walk_node(base, node)


def _walk_node(field_name: str, node: tuple[Any, ...]) -> Iterator[tuple[str, RawUpload]]:
    model = node[0]

    if not _is_branch(model):
        for attribute, value in zip(ATTRIBUTES[1:], node[1:]):
            if _is_branch(value):
                raise StructuralMismatchError(field_name, attribute, "expected a single value")
        yield field_name, RawUpload(*node)
        return

    _check_siblings(field_name, node)
    for key, _ in _items(model):
        sub_name = f"{field_name}[{key}]"
        children = []
        for attribute, value in zip(ATTRIBUTES, node):
            if not _is_branch(value):
                raise StructuralMismatchError(sub_name, attribute, f"no nested value for key {key!r}")
            child = _lookup(value, key)
            if child is _missing:
                raise StructuralMismatchError(sub_name, attribute, f"missing key {key!r}")
            children.append(child)
        yield from _walk_node(sub_name, tuple(children))


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _rx_integer.match(value.strip()):
        return int(value)
    return None


def classify(
    field_name: str,
    raw: RawUpload,
    trusted: bool = False,
    channel: UploadChannel | None = None,
) -> Upload:
    """Turn the raw values of one field into a record, or raise.

    ``trusted`` means the descriptor came from ``channel`` itself, in which
    case a successful upload must also be a file the channel received.
    Caller-supplied descriptors cannot be authenticated and skip that check.

    Raises:
        ServerProblemException: The server could not store the upload.
        SecurityConcernException: The error code is unknown, or a trusted
            success points at a file the channel never received.
    """
    code = _as_int(raw.error)

    if code == UploadErrorCode.OK:
        if trusted:
            if channel is None:
                raise ValueError("A trusted descriptor needs its upload channel")
            if not channel.is_uploaded_file(raw.tmp_name):
                raise SecurityConcernException(field_name, SecurityConcernException.NOT_UPLOADED)
        return UploadFile(field_name, raw.name, raw.tmp_name, raw.type, _as_int(raw.size))

    elif code in CLIENT_CODES:
        return UploadError(field_name, code, _as_int(raw.size))

    elif code in SERVER_CODES:
        raise ServerProblemException(field_name, code)

    elif code is not None and code >= 0:
        raise SecurityConcernException(field_name, SecurityConcernException.UNKNOWN_CODE + code)

    else:
        raise SecurityConcernException(field_name, SecurityConcernException.UNKNOWN_CODE, unknown_code=raw.error)


class UploadIterator:
    """A read-only, ordered collection over the uploads of one request.

    With no descriptor, the collection reads ``channel.files`` once and
    checks every successful upload against the channel.  A caller-supplied
    descriptor with the same format is taken as is::

        uploads = UploadIterator({
            "avatar": {"name": "pic.png", "type": "image/png", "size": 1024,
                       "tmp_name": "/tmp/php1", "error": 0},
        })
        for upload in uploads:
            if isinstance(upload, UploadFile):
                upload.move_to("/srv/avatars/1.png")

    Construction is all-or-nothing: if any upload indicates a server problem
    or a security concern the constructor raises and no collection exists.

    Besides indexing and ``len()``, the collection has a cursor
    (:meth:`rewind`, :meth:`advance`, :meth:`current`, :meth:`key`,
    :meth:`valid`, :meth:`seek`) which plain iteration does not move.

    Raises:
        UploadException: From the first upload that warrants one.
        StructuralMismatchError: If the descriptor is malformed.
    """

    def __init__(self, files: Descriptor | None = None, channel: UploadChannel | None = None) -> None:
        self.logger = logging.getLogger(__name__)

        if files is None:
            if channel is None:
                raise ValueError("Either an upload descriptor or an upload channel is required")
            files = channel.files
            self._trusted = True
        else:
            self._trusted = False

        self._channel = channel
        self._files: list[Upload] = self._import(files)
        self._index = 0

    @classmethod
    def from_channel(cls, channel: UploadChannel) -> UploadIterator:
        """Build the trusted collection over everything ``channel`` received."""
        return cls(channel=channel)

    @property
    def trusted(self) -> bool:
        """Whether the descriptor came from the upload channel."""
        return self._trusted

    @property
    def channel(self) -> UploadChannel | None:
        return self._channel

    def _import(self, files: Descriptor) -> list[Upload]:
        if not files:
            return []

        uploads: list[Upload] = []
        for field_name, raw in walk(files):
            try:
                upload = classify(field_name, raw, self._trusted, self._channel)
            except UploadException as e:
                self.logger.warning("Rejecting uploads: %s", e)
                raise
            self.logger.debug("Imported %r", upload)
            uploads.append(upload)
        return uploads

    def files(self) -> list[UploadFile]:
        """The successful uploads only."""
        return [u for u in self._files if isinstance(u, UploadFile)]

    def errors(self) -> list[UploadError]:
        """The failed uploads only."""
        return [u for u in self._files if isinstance(u, UploadError)]

    # Positional access.

    def offset_exists(self, offset: object) -> bool:
        return isinstance(offset, int) and not isinstance(offset, bool) and 0 <= offset < len(self._files)

    def __getitem__(self, offset: int) -> Upload:
        if not isinstance(offset, int) or isinstance(offset, bool):
            raise TypeError(f"Upload positions must be integers, not {type(offset).__name__}")
        if not self.offset_exists(offset):
            raise OutOfRangeError(f"Offset {offset} does not exist")
        return self._files[offset]

    def __setitem__(self, offset: int, value: object) -> None:
        raise UnsupportedOperation("Cannot update the upload collection")

    def __delitem__(self, offset: int) -> None:
        raise UnsupportedOperation("Cannot update the upload collection")

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[Upload]:
        return iter(self._files)

    # The cursor.

    def current(self) -> Upload:
        """The upload at the cursor.

        Raises:
            OutOfRangeError: If the cursor is past the last upload.
        """
        if not self.valid():
            raise OutOfRangeError(f"No upload at position {self._index}")
        return self._files[self._index]

    def key(self) -> int:
        return self._index

    def advance(self) -> None:
        if self._index < len(self._files):
            self._index += 1

    def rewind(self) -> None:
        self._index = 0

    def valid(self) -> bool:
        return self._index < len(self._files)

    def seek(self, position: int) -> None:
        """Move the cursor to ``position``.

        Raises:
            OutOfRangeError: If there is no upload at that position.  The
                cursor does not move.
        """
        if not self.offset_exists(position):
            raise OutOfRangeError(f"Cannot seek to {position}")
        self._index = position

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(count={len(self._files)}, trusted={self._trusted!r})"
