"""
Tests for output verification.
"""
import os

import pytest

from app.core.errors import InvalidOutputPath, OutputEmpty, OutputMissing
from app.core.verifier import verify_output


class TestVerifyOutput:

    def test_valid_output(self, tmp_path):
        (tmp_path / "dist" / "assets").mkdir(parents=True)
        (tmp_path / "dist" / "index.html").write_text("hi")
        (tmp_path / "dist" / "assets" / "app.js").write_text("1")

        verified = verify_output(tmp_path, "dist")

        assert verified.file_count == 2
        assert verified.path == (tmp_path / "dist").resolve()

    def test_missing_output(self, tmp_path):
        with pytest.raises(OutputMissing) as exc:
            verify_output(tmp_path, "build")
        assert exc.value.message == "Output directory not found: build"

    def test_output_is_a_file(self, tmp_path):
        (tmp_path / "dist").write_text("not a dir")
        with pytest.raises(OutputMissing):
            verify_output(tmp_path, "dist")

    def test_empty_output(self, tmp_path):
        (tmp_path / "dist").mkdir()
        with pytest.raises(OutputEmpty):
            verify_output(tmp_path, "dist")

    def test_only_empty_subdirectories(self, tmp_path):
        """Test a tree with directories but no files has nothing to deploy."""
        (tmp_path / "dist" / "a" / "b").mkdir(parents=True)
        with pytest.raises(OutputEmpty):
            verify_output(tmp_path, "dist")

    @pytest.mark.parametrize("output_directory", ["", "/etc", "../outside", "dist/../../outside"])
    def test_rejects_unsafe_paths(self, tmp_path, output_directory):
        with pytest.raises(InvalidOutputPath):
            verify_output(tmp_path, output_directory)

    def test_rejects_symlink_escape(self, tmp_path):
        """Test a symlinked output directory pointing outside the checkout."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("x")
        source = tmp_path / "source"
        source.mkdir()
        os.symlink(outside, source / "dist")

        with pytest.raises(InvalidOutputPath):
            verify_output(source, "dist")
