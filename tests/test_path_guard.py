"""Tests for gearshift.path_guard."""

import os

import pytest

from gearshift.errors import InvalidParameter, InvalidPath
from gearshift.models import ImplementationScope, Route
from gearshift.path_guard import (
    PathGuard,
    validate_bounded_list,
    validate_bounded_text,
    validate_clarifications,
    validate_enum,
    validate_implementation_scope,
    validate_route,
)


class TestValidateDirectory:
    """Tests for PathGuard.validate_directory."""

    def test_root_itself_is_allowed(self, tmp_path):
        guard = PathGuard([tmp_path])
        assert guard.validate_directory(tmp_path) == tmp_path.resolve()

    def test_descendant_is_allowed(self, tmp_path):
        child = tmp_path / "project" / "src"
        child.mkdir(parents=True)
        resolved = PathGuard([tmp_path]).validate_directory(str(child))
        assert resolved.is_absolute()
        assert tmp_path.resolve() in resolved.parents

    def test_relative_path_resolves_against_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "sub").mkdir()
        monkeypatch.chdir(tmp_path)
        guard = PathGuard()
        assert guard.validate_directory("sub") == (tmp_path / "sub").resolve()

    def test_outside_root_is_rejected(self, tmp_path):
        inside = tmp_path / "inside"
        inside.mkdir()
        with pytest.raises(InvalidPath, match="outside allowed workspace"):
            PathGuard([inside]).validate_directory(tmp_path)

    @pytest.mark.parametrize(
        "candidate",
        [
            "../etc",
            "project/../../etc",
            "..",
            "%2e%2e/etc",
            "project/%2E%2E%2Fetc",
            ".%2e/secret",
            "%252e%252e/secret",
        ],
    )
    def test_traversal_is_rejected(self, tmp_path, candidate):
        with pytest.raises(InvalidPath, match="traversal"):
            PathGuard([tmp_path]).validate_directory(f"{tmp_path}/{candidate}")

    def test_dotted_names_are_not_traversal(self, tmp_path):
        target = tmp_path / "..config" / "v1..2"
        target.mkdir(parents=True)
        assert PathGuard([tmp_path]).validate_directory(target) == target.resolve()

    @pytest.mark.parametrize("candidate", ["a;rm -rf", "a|b", "$(whoami)", "a`b`"])
    def test_shell_metacharacters_are_rejected(self, tmp_path, candidate):
        with pytest.raises(InvalidPath, match="shell metacharacters"):
            PathGuard([tmp_path]).validate_directory(f"{tmp_path}/{candidate}")

    def test_null_byte_is_rejected(self, tmp_path):
        with pytest.raises(InvalidPath, match="null byte"):
            PathGuard([tmp_path]).validate_directory(f"{tmp_path}/a\x00b")

    def test_empty_is_rejected(self, tmp_path):
        with pytest.raises(InvalidPath):
            PathGuard([tmp_path]).validate_directory("  ")

    def test_symlink_escaping_root_is_rejected(self, tmp_path):
        root = tmp_path / "root"
        outside = tmp_path / "outside"
        root.mkdir()
        outside.mkdir()
        link = root / "link"
        os.symlink(outside, link)
        with pytest.raises(InvalidPath, match="outside allowed workspace"):
            PathGuard([root]).validate_directory(link)


class TestValidateFilePath:
    """Tests for PathGuard.validate_file_path."""

    def test_file_inside_directory(self, tmp_path):
        guard = PathGuard([tmp_path])
        assert guard.validate_file_path(tmp_path, "context.yaml") == (
            tmp_path.resolve() / "context.yaml"
        )

    def test_file_escaping_directory(self, tmp_path):
        guard = PathGuard([tmp_path])
        with pytest.raises(InvalidPath):
            guard.validate_file_path(tmp_path, "../context.yaml")


class TestValidateEnum:
    """Tests for enum validation."""

    def test_accepts_value(self):
        assert validate_enum("greenfield", Route, "route") == Route.GREENFIELD

    def test_accepts_member(self):
        assert validate_enum(Route.BROWNFIELD, Route, "route") == Route.BROWNFIELD

    def test_rejects_unknown_value(self):
        with pytest.raises(InvalidParameter) as exc_info:
            validate_enum("sideways", Route, "route")
        assert exc_info.value.param == "route"

    def test_rejects_non_string(self):
        with pytest.raises(InvalidParameter, match="expected string"):
            validate_enum(3, Route, "route")

    def test_route_allows_none(self):
        assert validate_route(None) is None

    def test_implementation_scope(self):
        assert validate_implementation_scope("p0_p1") == ImplementationScope.P0_P1


class TestBoundedInputs:
    """Tests for bounded text and list validation."""

    def test_text_at_limit(self):
        assert validate_bounded_text("a" * 10, 10, "answer") == "a" * 10

    def test_text_over_limit(self):
        with pytest.raises(InvalidParameter, match="answer"):
            validate_bounded_text("a" * 11, 10, "answer")

    def test_list_over_count(self):
        with pytest.raises(InvalidParameter, match="maximum of 3 items"):
            validate_bounded_list(["a"] * 4, 3, 10, "answers")

    def test_list_item_over_length(self):
        with pytest.raises(InvalidParameter) as exc_info:
            validate_bounded_list(["ok", "x" * 11], 3, 10, "answers")
        assert exc_info.value.reasons == ["[1]: exceeds maximum length of 10 characters"]

    def test_clarification_batch_of_101_is_rejected(self):
        batch = [{"question": "q", "answer": "a"}] * 101
        with pytest.raises(InvalidParameter, match="maximum of 100 items"):
            validate_clarifications(batch)

    def test_clarification_answer_of_5001_is_rejected(self):
        with pytest.raises(InvalidParameter) as exc_info:
            validate_clarifications([{"question": "q", "answer": "a" * 5001}])
        assert exc_info.value.param == "clarifications[0].answer"

    def test_full_clarification_batch_is_accepted(self):
        batch = [{"question": "q" * 5000, "answer": "a" * 5000} for _ in range(100)]
        assert len(validate_clarifications(batch)) == 100

    def test_hundred_texts_of_5000_are_accepted(self):
        values = ["x" * 5000] * 100
        assert validate_bounded_list(values, 100, 5000, "answers") == values
