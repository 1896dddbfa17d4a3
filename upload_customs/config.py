"""Information about the upload configuration.

Some values come straight from the configuration dict.  Others are computed
from the configuration and run-time information, like the fields of the
submitted form.
"""

from __future__ import annotations

import logging
import os
import re
import sys
import tempfile
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Mapping
    from typing import Any, TypedDict

    class UploadConfigDict(TypedDict, total=False):
        FILE_UPLOADS: bool
        UPLOAD_TMP_DIR: str | None
        UPLOAD_MAX_FILESIZE: str | int
        POST_MAX_SIZE: str | int
        MAX_FILE_UPLOADS: int
        MAX_INPUT_VARS: int


#: Prefix for environment variables read by :meth:`UploadConfig.from_environ`.
ENVIRON_PREFIX = "UPLOAD_CUSTOMS_"

_size_re = re.compile(r"^\s*(-?\d+)\s*([kmg]?)\s*$", re.IGNORECASE)
_size_multipliers = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def ini_size_to_bytes(value: str | int | None) -> int:
    """Convert a shorthand size like ``"2M"`` into a number of bytes.

    Integers pass through unchanged and an empty value means 0.  The suffixes
    ``K``, ``M`` and ``G`` are understood in either case.

    Raises:
        ValueError: If the value is not a recognizable size.
    """
    if value is None:
        return 0
    if isinstance(value, int):
        return value

    if not value.strip():
        return 0

    match = _size_re.match(value)
    if match is None:
        raise ValueError(f"Invalid size: {value!r}")

    number, suffix = match.groups()
    return int(number) * _size_multipliers[suffix.lower()]


def limit(a: int, b: int) -> int:
    """Given two values which follow the "0 or fewer is unlimited" pattern,
    return the limiting number, or ``sys.maxsize`` if neither limits.
    """
    # If both are limited, the minimum is the limit.
    if a > 0 and b > 0:
        return min(a, b)

    # If both are unlimited, there is no limit.
    elif a <= 0 and b <= 0:
        return sys.maxsize

    # Only one is limited, so it is the larger one.
    else:
        return max(a, b)


class UploadConfig:
    """Upload limits and locations.

    The configuration is a plain dict merged onto :attr:`DEFAULT_CONFIG`.
    ``form`` holds the non-file fields of the submitted form, in which the
    hidden ``MAX_FILE_SIZE`` input lives.

    If a returned limit equals ``sys.maxsize`` there is effectively no limit.
    """

    DEFAULT_CONFIG: UploadConfigDict = {
        "FILE_UPLOADS": True,
        "UPLOAD_TMP_DIR": None,
        "UPLOAD_MAX_FILESIZE": "2M",
        "POST_MAX_SIZE": "8M",
        "MAX_FILE_UPLOADS": 20,
        "MAX_INPUT_VARS": 1000,
    }

    def __init__(self, config: Mapping[str, Any] | None = None, form: Mapping[str, Any] | None = None) -> None:
        self.logger = logging.getLogger(__name__)
        self.config: UploadConfigDict = self.DEFAULT_CONFIG.copy()
        if config:
            self.config.update(config)  # type: ignore[typeddict-item]
        self.form: dict[str, Any] = dict(form) if form else {}

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> UploadConfig:
        """Build a configuration from ``UPLOAD_CUSTOMS_*`` environment variables,
        e.g. ``UPLOAD_CUSTOMS_UPLOAD_MAX_FILESIZE=16M``.
        """
        if environ is None:
            environ = os.environ

        config: dict[str, Any] = {}
        for key, default in cls.DEFAULT_CONFIG.items():
            raw = environ.get(ENVIRON_PREFIX + key)
            if raw is None:
                continue

            if isinstance(default, bool):
                config[key] = raw.strip().lower() in ("1", "on", "true", "yes")
            elif isinstance(default, int):
                config[key] = int(raw)
            else:
                config[key] = raw
        return cls(config)

    def is_enabled(self) -> bool:
        """Are file uploads enabled?"""
        return bool(self.config["FILE_UPLOADS"])

    def upload_working_path(self) -> str:
        """In what directory will uploads be held for processing?

        ``UPLOAD_TMP_DIR`` when it is a writable directory, otherwise the
        system temporary directory.
        """
        path = self.config.get("UPLOAD_TMP_DIR")
        if path and os.path.isdir(path) and os.access(path, os.W_OK):
            return path

        if path:
            self.logger.warning("Upload directory %r is not writable, falling back", path)
        return tempfile.gettempdir()

    def system_max_upload_bytes(self) -> int:
        """The maximum file size supported system-wide.

        Controlled by ``UPLOAD_MAX_FILESIZE`` but also constrained by
        ``POST_MAX_SIZE``: the lower of the two is the upper limit.
        """
        post_max = ini_size_to_bytes(self.config["POST_MAX_SIZE"])
        upload_max = ini_size_to_bytes(self.config["UPLOAD_MAX_FILESIZE"])
        return limit(post_max, upload_max)

    def form_max_upload_bytes(self) -> int:
        """The maximum file size the submitted form asked for.

        A hidden ``MAX_FILE_SIZE`` input limits every file input that comes
        after it in the form.
        """
        value = self.form.get("MAX_FILE_SIZE")
        if value is None:
            return sys.maxsize

        if isinstance(value, bytes):
            value = value.decode("latin-1")
        try:
            return int(value)
        except (TypeError, ValueError):
            self.logger.warning("Ignoring invalid MAX_FILE_SIZE: %r", value)
            return sys.maxsize

    def max_file_uploads(self) -> int:
        """How many simultaneous file uploads are supported?

        Every upload is also an input variable, so ``MAX_INPUT_VARS`` is
        considered too.
        """
        return limit(int(self.config["MAX_FILE_UPLOADS"]), int(self.config["MAX_INPUT_VARS"]))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(config={self.config!r})"
