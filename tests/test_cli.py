"""
Tests for CLI commands — run, plan, status, reset, lint, cache.
"""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from src.main import cli
from tests.helpers import write_step


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "phase-ordered project bootstrap" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A target with a stackforge.yml and two shell steps."""
    monkeypatch.setenv("STACKFORGE_CACHE_DIR", str(tmp_path / "cache"))
    root = tmp_path / "app"
    root.mkdir()
    (root / "stackforge.yml").write_text("profiles:\n  web: [web]\n")
    write_step(
        root / "steps", "00-init.sh",
        "id: init\nname: Init\nphase: 0\nprofile_tags: [all]",
        "echo hello > hello.txt\n",
    )
    write_step(
        root / "steps", "01-web.sh",
        "id: web\nname: Web\nphase: 1\nprofile_tags: [web]\ndepends_on: [init]",
        "mkdir -p web && touch web/index.html\n",
    )
    return root


class TestRunCommand:
    def test_run_then_rerun(self, project: Path):
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "--target", str(project)])
        assert result.exit_code == 0, result.output
        assert "2 succeeded, 0 skipped, 0 failed" in result.output
        assert (project / "hello.txt").read_text() == "hello\n"

        again = runner.invoke(cli, ["run", "--target", str(project)])
        assert again.exit_code == 0
        assert "0 succeeded, 2 skipped, 0 failed" in again.output
        assert "skipped(already_done)" in again.output

    def test_failure_exit_code_and_first_error(self, project: Path):
        write_step(project / "steps", "00-broken.sh", "id: broken\nname: Broken\nphase: 0", "exit 4\n")
        result = CliRunner().invoke(cli, ["run", "--target", str(project)])
        assert result.exit_code == 1
        assert "First error: broken" in result.output

    def test_json(self, project: Path):
        result = CliRunner().invoke(cli, ["run", "--target", str(project), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["report"]["succeeded"] == 2

    def test_dry_run(self, project: Path):
        result = CliRunner().invoke(cli, ["run", "--target", str(project), "--dry-run"])
        assert result.exit_code == 0
        assert "skipped(dry_run)" in result.output
        assert not (project / "hello.txt").exists()

    def test_malformed_registry(self, project: Path):
        (project / "steps" / "bad.sh").write_text("#!meta\n# id: bad\n#!endmeta\n")
        result = CliRunner().invoke(cli, ["run", "--target", str(project)])
        assert result.exit_code == 1
        assert "MalformedMetadata" in result.output
        assert not (project / "hello.txt").exists()


class TestPlanAndStatus:
    def test_plan_profile(self, project: Path):
        result = CliRunner().invoke(cli, ["plan", "--target", str(project), "--profile", "web", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [s["id"] for p in data["phases"] for s in p["steps"]] == ["init", "web"]
        assert data["done"] == []

    def test_status_after_run(self, project: Path):
        runner = CliRunner()
        runner.invoke(cli, ["run", "--target", str(project)])
        result = runner.invoke(cli, ["status", "--target", str(project), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["completed"] == 2
        assert {s["id"]: s["state"] for s in data["steps"]} == {"init": "done", "web": "done"}

    def test_reset(self, project: Path):
        runner = CliRunner()
        runner.invoke(cli, ["run", "--target", str(project)])

        result = runner.invoke(cli, ["reset", "--target", str(project), "web", "ghost"])
        assert result.exit_code == 0
        assert "cleared web" in result.output
        assert "ghost was not marked complete" in result.output

        result = runner.invoke(cli, ["reset", "--target", str(project), "--all"])
        assert "Cleared 1 completed step(s)" in result.output

        rerun = runner.invoke(cli, ["run", "--target", str(project)])
        assert "2 succeeded" in rerun.output

    def test_reset_needs_arguments(self, project: Path):
        result = CliRunner().invoke(cli, ["reset", "--target", str(project)])
        assert result.exit_code == 2


class TestLintCommand:
    def test_valid(self, project: Path):
        result = CliRunner().invoke(cli, ["lint", "--target", str(project)])
        assert result.exit_code == 0
        assert "2 step headers are valid" in result.output

    def test_malformed(self, project: Path):
        (project / "steps" / "bad.py").write_text("#!meta\n# id: bad\n# phase: one\n#!endmeta\n")
        result = CliRunner().invoke(cli, ["lint", "--target", str(project), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert not data["valid"]
        assert any("missing 'name'" in e for e in data["errors"])
        assert any("non-numeric phase" in e for e in data["errors"])


class TestCacheCommands:
    def test_status_empty(self, project: Path, tmp_path: Path):
        result = CliRunner().invoke(cli, ["cache", "status", "--target", str(project), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["entries"] == 0
        assert data["cache_dir"] == str(tmp_path / "cache")

    def test_clear_empty(self, project: Path):
        result = CliRunner().invoke(cli, ["cache", "clear", "--target", str(project)])
        assert result.exit_code == 0
        assert "Removed 0 cache entries" in result.output
