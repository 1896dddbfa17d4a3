from __future__ import annotations

import copy
import os
import unittest
from typing import TYPE_CHECKING

import pytest
import yaml

from upload_customs import exceptions
from upload_customs.channel import UploadChannel
from upload_customs.entities import ErrorKind, UploadError, UploadFile
from upload_customs.exceptions import (
    OutOfRangeError,
    SecurityConcernException,
    ServerProblemException,
    StructuralMismatchError,
    UnsupportedOperation,
)
from upload_customs.iterator import RawUpload, UploadIterator, classify, gather, resolve_names, tokenize, walk

if TYPE_CHECKING:
    from typing import Any


# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))
descriptor_tests_dir = os.path.join(curr_dir, "test_data", "descriptors")


def entry(name: Any, type: Any, size: Any, tmp_name: Any, error: Any) -> dict[str, Any]:
    return {"name": name, "type": type, "size": size, "tmp_name": tmp_name, "error": error}


def ok(name: str, tmp_name: str, size: int = 1) -> dict[str, Any]:
    return entry(name, "text/plain", size, tmp_name, 0)


# Load all the descriptor scenarios.
descriptor_tests: list[dict[str, Any]] = []
for f in sorted(os.listdir(descriptor_tests_dir)):
    fname, ext = os.path.splitext(f)
    if ext != ".yaml":
        continue

    with open(os.path.join(descriptor_tests_dir, f), "rb") as fy:
        data = yaml.safe_load(fy)
    data["name"] = fname
    descriptor_tests.append(data)


@pytest.mark.parametrize("param", descriptor_tests, ids=[t["name"] for t in descriptor_tests])
def test_descriptor_scenarios(param: dict[str, Any]) -> None:
    descriptor = param["descriptor"]

    if "raises" in param:
        exc_class = getattr(exceptions, param["raises"])
        with pytest.raises(exc_class) as excinfo:
            UploadIterator(descriptor)
        assert excinfo.value.field_name == param["field_name"]
        return

    uploads = UploadIterator(descriptor)
    assert len(uploads) == len(param["expected"])

    for upload, expected in zip(uploads, param["expected"]):
        assert upload.field_name == expected["field_name"]
        if expected["outcome"] == "file":
            assert isinstance(upload, UploadFile)
            assert upload.client_filename == expected["client_filename"]
            assert upload.server_file == expected["server_file"]
        else:
            assert isinstance(upload, UploadError)
            assert upload.kind is ErrorKind[expected["kind"]]
            assert upload.size == expected["size"]


class TestResolveNames(unittest.TestCase):
    def test_empty(self) -> None:
        self.assertEqual(resolve_names({}), [])

    def test_scalar_names_keep_order(self) -> None:
        descriptor = {
            "zeta": ok("z.txt", "/tmp/z"),
            "alpha": ok("a.txt", "/tmp/a"),
            "mid": ok("m.txt", "/tmp/m"),
        }
        self.assertEqual(resolve_names(descriptor), ["zeta", "alpha", "mid"])

    def test_outer_inner_grid(self) -> None:
        outer = ["o1", "o2", "o3"]
        inner = ["i1", "i2"]
        descriptor = {}
        for o in outer:
            tree = {i: f"{o}-{i}" for i in inner}
            descriptor[o] = entry(tree, tree, {i: 1 for i in inner}, tree, {i: 0 for i in inner})

        names = resolve_names(descriptor)
        self.assertEqual(len(names), len(outer) * len(inner))
        self.assertEqual(names, [f"{o}[{i}]" for o in outer for i in inner])

    def test_deep_nesting(self) -> None:
        tree = {"a": {"b": {2: "x"}}, "c": "y"}
        descriptor = {"outer": entry(tree, tree, tree, tree, tree)}
        self.assertEqual(resolve_names(descriptor), ["outer[a][b][2]", "outer[c]"])

    def test_lists_are_indexed(self) -> None:
        descriptor = {"f": entry(["a", "b"], ["t", "t"], [1, 2], ["/a", "/b"], [0, 0])}
        self.assertEqual(resolve_names(descriptor), ["f[0]", "f[1]"])

    def test_missing_name_attribute(self) -> None:
        with self.assertRaises(StructuralMismatchError) as cm:
            resolve_names({"f": {"type": "text/plain"}})
        self.assertEqual(cm.exception.attribute, "name")


class TestTokenize(unittest.TestCase):
    def test_plain(self) -> None:
        self.assertEqual(tokenize("avatar"), ["avatar"])

    def test_brackets(self) -> None:
        self.assertEqual(tokenize("outer[inner][2]"), ["outer", "inner", "2"])

    def test_empty_key(self) -> None:
        self.assertEqual(tokenize("outer[]"), ["outer", ""])


class TestGather(unittest.TestCase):
    def setUp(self) -> None:
        self.descriptor = {
            "docs": entry(
                {"cv": "cv.pdf", "photos": {0: "a.png"}},
                {"cv": "application/pdf", "photos": {0: "image/png"}},
                {"cv": 5120, "photos": {0: 1024}},
                {"cv": "/tmp/up1", "photos": {0: "/tmp/up2"}},
                {"cv": 0, "photos": {0: 3}},
            ),
            "single": entry("s.txt", "text/plain", 7, "/tmp/up3", 0),
        }

    def test_scalar(self) -> None:
        raw = gather(self.descriptor, "single")
        self.assertEqual(raw, RawUpload("s.txt", "text/plain", 7, "/tmp/up3", 0))

    def test_nested(self) -> None:
        raw = gather(self.descriptor, "docs[photos][0]")
        self.assertEqual(raw, RawUpload("a.png", "image/png", 1024, "/tmp/up2", 3))

    def test_values_are_literal(self) -> None:
        for name in resolve_names(self.descriptor):
            keys = tokenize(name)
            raw = gather(self.descriptor, name)
            for attribute, value in zip(RawUpload._fields, raw):
                node: Any = self.descriptor[keys[0]][attribute]
                for key in keys[1:]:
                    node = node[int(key)] if key.isdigit() else node[key]
                self.assertIs(value, node)

    def test_unknown_field(self) -> None:
        with self.assertRaises(StructuralMismatchError):
            gather(self.descriptor, "nope")

    def test_missing_key_in_one_attribute(self) -> None:
        del self.descriptor["docs"]["error"]["cv"]
        with self.assertRaises(StructuralMismatchError) as cm:
            gather(self.descriptor, "docs[cv]")
        self.assertEqual(cm.exception.attribute, "error")

    def test_path_too_deep(self) -> None:
        with self.assertRaises(StructuralMismatchError):
            gather(self.descriptor, "single[x]")

    def test_path_too_shallow(self) -> None:
        with self.assertRaises(StructuralMismatchError):
            gather(self.descriptor, "docs[photos]")

    def test_walk_agrees_with_gather(self) -> None:
        walked = list(walk(self.descriptor))
        self.assertEqual([name for name, _ in walked], resolve_names(self.descriptor))
        for name, raw in walked:
            self.assertEqual(raw, gather(self.descriptor, name))

    def test_walk_detects_leaf_mismatch(self) -> None:
        self.descriptor["single"]["size"] = {"x": 1}
        with self.assertRaises(StructuralMismatchError) as cm:
            list(walk(self.descriptor))
        self.assertEqual(cm.exception.field_name, "single")
        self.assertEqual(cm.exception.attribute, "size")

    def test_walk_detects_missing_branch(self) -> None:
        self.descriptor["docs"]["tmp_name"] = "/tmp/flat"
        with self.assertRaises(StructuralMismatchError) as cm:
            list(walk(self.descriptor))
        self.assertEqual(cm.exception.attribute, "tmp_name")

    def test_extra_key_in_one_attribute(self) -> None:
        self.descriptor["docs"]["size"]["extra"] = 9
        with self.assertRaises(StructuralMismatchError) as cm:
            gather(self.descriptor, "docs[cv]")
        self.assertEqual(cm.exception.field_name, "docs[extra]")
        self.assertEqual(cm.exception.attribute, "size")

    def test_walk_detects_extra_key(self) -> None:
        self.descriptor["docs"]["error"]["photos"][1] = 0
        with self.assertRaises(StructuralMismatchError) as cm:
            list(walk(self.descriptor))
        self.assertEqual(cm.exception.field_name, "docs[photos][1]")
        self.assertEqual(cm.exception.attribute, "error")

    def test_top_level_key_with_bracket(self) -> None:
        self.descriptor["odd[name"] = entry("o.txt", "text/plain", 2, "/tmp/up4", 0)
        self.assertEqual(gather(self.descriptor, "odd[name"), RawUpload("o.txt", "text/plain", 2, "/tmp/up4", 0))
        for name, raw in walk(self.descriptor):
            self.assertEqual(raw, gather(self.descriptor, name))

    def test_longest_top_level_key_wins(self) -> None:
        self.descriptor["docs[cv]"] = entry({"x": "x.txt"}, {"x": "text/plain"}, {"x": 1}, {"x": "/tmp/x"}, {"x": 0})
        self.assertEqual(gather(self.descriptor, "docs[cv][x]").name, "x.txt")
        self.assertEqual(gather(self.descriptor, "docs[photos][0]").name, "a.png")


class TestClassify(unittest.TestCase):
    def raw(self, error: Any, tmp_name: str = "/tmp/php1", size: Any = 10) -> RawUpload:
        return RawUpload("f.txt", "text/plain", size, tmp_name, error)

    def test_success(self) -> None:
        upload = classify("f", self.raw(0))
        self.assertEqual(upload, UploadFile("f", "f.txt", "/tmp/php1"))
        assert isinstance(upload, UploadFile)
        self.assertEqual(upload.declared_type, "text/plain")
        self.assertEqual(upload.size, 10)

    def test_client_errors(self) -> None:
        for code, kind in [(1, ErrorKind.OVERSIZE_SERVER), (2, ErrorKind.OVERSIZE_FORM), (3, ErrorKind.PARTIAL), (4, ErrorKind.NO_FILE)]:
            upload = classify("f", self.raw(code))
            assert isinstance(upload, UploadError)
            self.assertIs(upload.kind, kind)

    def test_partial_reports_size(self) -> None:
        upload = classify("f", self.raw(3, size=77))
        assert isinstance(upload, UploadError)
        self.assertEqual(upload.received, 77)

    def test_server_problems(self) -> None:
        for code in (6, 7, 8):
            with self.assertRaises(ServerProblemException) as cm:
                classify("f", self.raw(code))
            self.assertEqual(cm.exception.code, code)
            self.assertEqual(cm.exception.field_name, "f")

    def test_unknown_codes(self) -> None:
        with self.assertRaises(SecurityConcernException) as cm:
            classify("f", self.raw(5))
        self.assertEqual(cm.exception.code, SecurityConcernException.UNKNOWN_CODE + 5)
        self.assertEqual(cm.exception.unknown_code, 5)

        with self.assertRaises(SecurityConcernException) as cm:
            classify("f", self.raw(42))
        self.assertEqual(cm.exception.unknown_code, 42)

    def test_garbage_codes(self) -> None:
        for code in ("bogus", None, -1, True):
            with self.assertRaises(SecurityConcernException) as cm:
                classify("f", self.raw(code))
            self.assertEqual(cm.exception.code, SecurityConcernException.UNKNOWN_CODE)
            self.assertEqual(cm.exception.unknown_code, code)

    def test_trusted_requires_genuine_upload(self) -> None:
        channel = UploadChannel(uploaded=["/tmp/real"])
        with self.assertRaises(SecurityConcernException) as cm:
            classify("f", self.raw(0, tmp_name="/tmp/fake"), trusted=True, channel=channel)
        self.assertEqual(cm.exception.code, SecurityConcernException.NOT_UPLOADED)

        upload = classify("f", self.raw(0, tmp_name="/tmp/real"), trusted=True, channel=channel)
        self.assertIsInstance(upload, UploadFile)

    def test_trusted_check_only_on_success(self) -> None:
        channel = UploadChannel()
        upload = classify("f", self.raw(4, tmp_name=""), trusted=True, channel=channel)
        self.assertIsInstance(upload, UploadError)

    def test_trusted_without_channel(self) -> None:
        with self.assertRaises(ValueError):
            classify("f", self.raw(0), trusted=True)


class TestUploadIterator(unittest.TestCase):
    def setUp(self) -> None:
        self.descriptor = {
            "a": ok("a.txt", "/tmp/a"),
            "b": entry("b.txt", "text/plain", 0, "", 4),
            "c": ok("c.txt", "/tmp/c"),
        }
        self.it = UploadIterator(self.descriptor)

    def test_count(self) -> None:
        self.assertEqual(len(self.it), 3)

    def test_indexing(self) -> None:
        self.assertEqual(self.it[0].field_name, "a")
        self.assertEqual(self.it[2].field_name, "c")

    def test_index_out_of_range(self) -> None:
        with self.assertRaises(OutOfRangeError):
            self.it[3]
        with self.assertRaises(OutOfRangeError):
            self.it[-1]
        # Still usable as a plain IndexError.
        with self.assertRaises(IndexError):
            self.it[100]

    def test_index_type(self) -> None:
        with self.assertRaises(TypeError):
            self.it["a"]  # type: ignore[index]

    def test_offset_exists(self) -> None:
        self.assertTrue(self.it.offset_exists(0))
        self.assertFalse(self.it.offset_exists(3))
        self.assertFalse(self.it.offset_exists(-1))
        self.assertFalse(self.it.offset_exists("0"))

    def test_read_only(self) -> None:
        with self.assertRaises(UnsupportedOperation):
            self.it[0] = self.it[1]  # type: ignore[index]
        with self.assertRaises(UnsupportedOperation):
            del self.it[0]
        self.assertEqual(len(self.it), 3)

    def test_cursor_traversal(self) -> None:
        seen = []
        self.it.rewind()
        while self.it.valid():
            seen.append((self.it.key(), self.it.current().field_name))
            self.it.advance()
        self.assertEqual(seen, [(0, "a"), (1, "b"), (2, "c")])

        # Exhausted: stays put and refuses to give a current upload.
        self.assertEqual(self.it.key(), 3)
        self.it.advance()
        self.assertEqual(self.it.key(), 3)
        with self.assertRaises(OutOfRangeError):
            self.it.current()

        self.it.rewind()
        self.assertTrue(self.it.valid())
        self.assertEqual(self.it.key(), 0)

    def test_seek(self) -> None:
        self.it.seek(2)
        self.assertEqual(self.it.current(), self.it[2])
        self.assertEqual(self.it.key(), 2)

    def test_seek_out_of_range_keeps_position(self) -> None:
        self.it.seek(1)
        with self.assertRaises(OutOfRangeError):
            self.it.seek(len(self.it))
        with self.assertRaises(OutOfRangeError):
            self.it.seek(-1)
        self.assertEqual(self.it.key(), 1)

    def test_iteration_does_not_move_cursor(self) -> None:
        self.it.seek(1)
        self.assertEqual([u.field_name for u in self.it], ["a", "b", "c"])
        self.assertEqual(self.it.key(), 1)

    def test_files_and_errors(self) -> None:
        self.assertEqual([u.field_name for u in self.it.files()], ["a", "c"])
        self.assertEqual([u.field_name for u in self.it.errors()], ["b"])

    def test_empty_is_exhausted(self) -> None:
        it = UploadIterator({})
        self.assertEqual(len(it), 0)
        self.assertFalse(it.valid())
        it.rewind()
        self.assertFalse(it.valid())
        with self.assertRaises(OutOfRangeError):
            it.seek(0)

    def test_idempotent(self) -> None:
        other = UploadIterator(self.descriptor)
        self.assertEqual(list(other), list(self.it))

    def test_descriptor_untouched(self) -> None:
        before = copy.deepcopy(self.descriptor)
        UploadIterator(self.descriptor)
        self.assertEqual(self.descriptor, before)

    def test_untrusted_skips_authenticity(self) -> None:
        # The channel has never seen /tmp/a, but the descriptor is ours.
        it = UploadIterator(self.descriptor, channel=UploadChannel())
        self.assertFalse(it.trusted)
        self.assertIsInstance(it[0], UploadFile)

    def test_fail_fast(self) -> None:
        self.descriptor["d"] = entry("d.txt", "text/plain", 1, "", 7)
        with self.assertRaises(ServerProblemException):
            UploadIterator(self.descriptor)

    def test_needs_a_source(self) -> None:
        with self.assertRaises(ValueError):
            UploadIterator()


class TestTrustedIterator(unittest.TestCase):
    def test_from_channel(self) -> None:
        channel = UploadChannel()
        channel.register("avatar", "pic.png", "image/png", 1024, "/tmp/php1")
        it = UploadIterator.from_channel(channel)

        self.assertTrue(it.trusted)
        self.assertIs(it.channel, channel)
        self.assertEqual(it[0], UploadFile("avatar", "pic.png", "/tmp/php1"))

    def test_forged_entry(self) -> None:
        channel = UploadChannel()
        channel.register("avatar", "pic.png", "image/png", 1024, "/tmp/php1")
        channel.files["forged"] = ok("evil.sh", "/etc/passwd")

        with self.assertRaises(SecurityConcernException) as cm:
            UploadIterator.from_channel(channel)
        self.assertEqual(cm.exception.field_name, "forged")
        self.assertEqual(cm.exception.code, SecurityConcernException.NOT_UPLOADED)

    def test_logs_rejection(self) -> None:
        channel = UploadChannel(files={"x": entry("x", "", 0, "", 9)})
        with self.assertLogs("upload_customs.iterator", level="WARNING") as logs:
            with self.assertRaises(SecurityConcernException):
                UploadIterator.from_channel(channel)
        self.assertIn("Rejecting uploads", logs.output[0])
