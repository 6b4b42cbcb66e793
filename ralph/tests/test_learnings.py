"""Tests for the shared learnings file."""

from pathlib import Path

from ralph.learnings import (
    DEFAULT_LEARNINGS_DIR,
    INITIAL_TEMPLATE,
    ensure_learnings_file,
    learnings_path,
    read_learnings,
)


class TestLearningsPath:
    """Tests for learnings_path()."""

    def test_default_location(self):
        path = learnings_path("add-user-auth")

        assert path == Path("/tmp/ralphtool/add-user-auth-learnings.md")
        assert path.parent == DEFAULT_LEARNINGS_DIR

    def test_custom_base_dir(self, tmp_path: Path):
        assert learnings_path("feature", tmp_path) == tmp_path / "feature-learnings.md"


class TestEnsureLearningsFile:
    """Tests for ensure_learnings_file()."""

    def test_creates_file_with_template(self, tmp_path: Path):
        base = tmp_path / "nested" / "dir"

        path = ensure_learnings_file("feature", base)

        assert path.read_text() == INITIAL_TEMPLATE
        assert "Shared Learnings" in INITIAL_TEMPLATE

    def test_never_overwrites_existing_content(self, tmp_path: Path):
        path = learnings_path("feature", tmp_path)
        path.write_text("- use the async client\n")

        ensure_learnings_file("feature", tmp_path)
        ensure_learnings_file("feature", tmp_path)

        assert path.read_text() == "- use the async client\n"


class TestReadLearnings:
    """Tests for read_learnings()."""

    def test_missing_file(self, tmp_path: Path):
        assert read_learnings("feature", tmp_path) is None

    def test_template_only(self, tmp_path: Path):
        ensure_learnings_file("feature", tmp_path)

        assert read_learnings("feature", tmp_path) is None

    def test_template_with_whitespace_only(self, tmp_path: Path):
        learnings_path("feature", tmp_path).write_text(INITIAL_TEMPLATE + "\n   \n")

        assert read_learnings("feature", tmp_path) is None

    def test_returns_full_content_when_recorded(self, tmp_path: Path):
        path = ensure_learnings_file("feature", tmp_path)
        with path.open("a") as f:
            f.write("- tasks.md ids are strings\n")

        content = read_learnings("feature", tmp_path)

        assert content == INITIAL_TEMPLATE + "- tasks.md ids are strings\n"

    def test_file_without_template(self, tmp_path: Path):
        learnings_path("feature", tmp_path).write_text("custom notes\n")

        assert read_learnings("feature", tmp_path) == "custom notes\n"
