"""CLI tests for the apply and parallel commands."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from shellcore.cli import app
from shellcore.cli.apply import ScriptStep, load_script
from shellcore.cli.parallel import read_commands

runner = CliRunner()

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


def _write_script(path: Path, steps: list[dict[str, object]]) -> Path:
    path.write_text(json.dumps(steps), encoding="utf-8")
    return path


class TestApply:
    """Test `shellcore apply`."""

    def test_commits_steps(self, tmp_path: Path) -> None:
        source = tmp_path / "a.txt"
        source.write_text("alpha")
        script = _write_script(
            tmp_path / "script.json",
            [
                {"op": "mkdir", "path": str(tmp_path / "out")},
                {"op": "copy", "src": str(source), "dst": str(tmp_path / "out" / "a.txt")},
                {"op": "write_file", "path": str(tmp_path / "out" / "b.txt"), "content": "beta"},
            ],
        )

        result = runner.invoke(
            app, ["apply", str(script), "--backup-dir", str(tmp_path / "bk")]
        )

        assert result.exit_code == 0, result.stdout
        assert "COMMITTED 3 step(s)" in result.stdout
        assert (tmp_path / "out" / "a.txt").read_text() == "alpha"
        assert (tmp_path / "out" / "b.txt").read_text() == "beta"

    def test_dry_run_changes_nothing(self, tmp_path: Path) -> None:
        target = tmp_path / "new.txt"
        script = _write_script(
            tmp_path / "script.json",
            [{"op": "write_file", "path": str(target), "content": "x"}],
        )

        result = runner.invoke(
            app,
            ["apply", str(script), "--dry-run", "--backup-dir", str(tmp_path / "bk")],
        )

        assert result.exit_code == 0
        assert "DRY RUN" in result.stdout
        assert not target.exists()

    def test_failure_rolls_back(self, tmp_path: Path) -> None:
        """Test that a failing step undoes the steps before it and exits 1."""
        created = tmp_path / "created.txt"
        script = _write_script(
            tmp_path / "script.json",
            [
                {"op": "write_file", "path": str(created), "content": "x"},
                {"op": "copy", "src": str(tmp_path / "ghost"), "dst": str(tmp_path / "d")},
            ],
        )

        result = runner.invoke(
            app, ["apply", str(script), "--backup-dir", str(tmp_path / "bk")]
        )

        assert result.exit_code == 1
        assert "ROLLED BACK" in result.stdout
        assert not created.exists()

    @posix_only
    def test_failing_command_rolls_back(self, tmp_path: Path) -> None:
        created = tmp_path / "created.txt"
        script = _write_script(
            tmp_path / "script.json",
            [
                {"op": "touch", "path": str(created)},
                {"op": "exec", "command": "exit 7"},
            ],
        )

        result = runner.invoke(
            app, ["apply", str(script), "--backup-dir", str(tmp_path / "bk")]
        )

        assert result.exit_code == 1
        assert not created.exists()

    def test_step_listing_needs_verbose(self, tmp_path: Path) -> None:
        steps = [{"op": "touch", "path": str(tmp_path / "t")}]

        quiet = runner.invoke(
            app,
            ["apply", str(_write_script(tmp_path / "q.json", steps)),
             "--backup-dir", str(tmp_path / "bk")],
        )
        loud = runner.invoke(
            app,
            ["apply", str(_write_script(tmp_path / "v.json", steps)),
             "--backup-dir", str(tmp_path / "bk"), "--verbose"],
        )

        assert quiet.exit_code == 0
        assert "touch" not in quiet.stdout
        assert loud.exit_code == 0
        assert "touch" in loud.stdout

    def test_verbose_lists_undone_steps(self, tmp_path: Path) -> None:
        script = _write_script(
            tmp_path / "script.json",
            [
                {"op": "mkdir", "path": str(tmp_path / "made")},
                {"op": "remove", "path": str(tmp_path / "ghost")},
            ],
        )

        result = runner.invoke(
            app,
            ["apply", str(script), "--backup-dir", str(tmp_path / "bk"), "-v"],
        )

        assert result.exit_code == 1
        assert "undo" in result.stdout
        assert not (tmp_path / "made").exists()

    def test_invalid_script(self, tmp_path: Path) -> None:
        script = _write_script(tmp_path / "script.json", [{"op": "copy", "src": "a"}])

        result = runner.invoke(app, ["apply", str(script)])

        assert result.exit_code == 1


class TestLoadScript:
    """Test script parsing."""

    def test_steps_wrapper(self, tmp_path: Path) -> None:
        path = tmp_path / "s.json"
        path.write_text(json.dumps({"steps": [{"op": "remove", "path": "/tmp/x"}]}))

        steps = load_script(path)

        assert steps == [ScriptStep(op="remove", path="/tmp/x")]
        assert steps[0].describe() == "remove /tmp/x"

    def test_missing_required_field(self, tmp_path: Path) -> None:
        path = _write_script(tmp_path / "s.json", [{"op": "write_file", "path": "/x"}])

        with pytest.raises(ValueError, match="content"):
            load_script(path)

    def test_not_json(self, tmp_path: Path) -> None:
        path = tmp_path / "s.json"
        path.write_text("{not json")

        with pytest.raises(ValueError, match="Cannot read script"):
            load_script(path)


@posix_only
class TestParallel:
    """Test `shellcore parallel`."""

    def test_runs_commands_in_order(self, tmp_path: Path) -> None:
        commands = tmp_path / "commands.txt"
        commands.write_text("echo one\n# skipped\n\necho two\n")

        result = runner.invoke(app, ["parallel", str(commands), "--jobs", "2"])

        assert result.exit_code == 0, result.stdout
        assert result.stdout.index("one") < result.stdout.index("two")
        assert result.stdout.count("OK") == 2

    def test_continue_on_error_reports_each_command(self, tmp_path: Path) -> None:
        commands = tmp_path / "commands.txt"
        commands.write_text("exit 4\necho after\n")

        result = runner.invoke(
            app, ["parallel", str(commands), "--continue-on-error"]
        )

        assert result.exit_code == 1
        assert "EXIT 4" in result.stdout
        assert "after" in result.stdout

    def test_fail_fast(self, tmp_path: Path) -> None:
        commands = tmp_path / "commands.txt"
        commands.write_text("exit 4\n")

        result = runner.invoke(app, ["parallel", str(commands)])

        assert result.exit_code == 1
        assert "FAILED" in result.stdout

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["parallel", str(tmp_path / "none.txt")])

        assert result.exit_code == 1


def test_read_commands_skips_comments(tmp_path: Path) -> None:
    path = tmp_path / "c.txt"
    path.write_text("  ls -l  \n#comment\n\n  # indented comment\npwd\n")

    assert read_commands(path) == ["ls -l", "pwd"]
