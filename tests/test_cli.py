"""
Tests for the docmemory CLI — every command via subprocess.

Every test exercises the real entry point (`python -m docmemory.cli`)
against a temporary storage directory so there are no side-effects on
the developer machine.
"""

import json
import os
import subprocess
import sys

import pytest

PYTHON = sys.executable
CLI = [PYTHON, "-m", "docmemory.cli"]


def run(args, *, env=None, stdin=None):
    """Run a docmemory CLI command and return CompletedProcess."""
    merged_env = {**os.environ, **(env or {})}
    merged_env.pop("DOCMEMORY_CONFIG", None)
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        input=stdin,
        timeout=60,
    )


@pytest.fixture
def mem(tmp_path):
    """An initialized memory directory; returns the --dir arguments."""
    target = str(tmp_path / "mem")
    r = run(["init", target, "-q"])
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return ["--dir", target]


def remember(mem, rtype, data, *extra):
    r = run(["remember", rtype, "--data", json.dumps(data), "-q", *mem, *extra])
    assert r.returncode == 0, f"remember failed: {r.stderr}"
    return r.stdout.strip()


@pytest.fixture
def populated(mem):
    ids = {
        "analysis": remember(mem, "analysis", {"language": "Python", "framework": "Django"},
                             "--project", "site"),
        "deployment": remember(mem, "deployment", {"status": "success"},
                               "--project", "site", "--ssg", "mkdocs"),
        "interaction": remember(mem, "interaction", {"q": "how to add search"},
                                "--tags", "search,plugins"),
    }
    return mem, ids


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_directory(self, tmp_path):
        target = tmp_path / "ws"
        r = run(["init", str(target)])
        assert r.returncode == 0
        assert (target / "config.json").is_file()
        assert (target / "graph").is_dir()
        assert "export DOCMEMORY_DIR" in r.stdout
        config = json.loads((target / "config.json").read_text(encoding="utf-8"))
        assert config["policy"]["max_age"] == 180

    def test_creates_gitignore(self, tmp_path):
        target = tmp_path / "ws"
        run(["init", str(target)])
        assert "backups/" in (target / ".gitignore").read_text(encoding="utf-8")

    def test_idempotent(self, tmp_path):
        target = tmp_path / "ws"
        run(["init", str(target)])
        (target / "config.json").write_text('{"manager": {"cache_size": 5}}', encoding="utf-8")
        r = run(["init", str(target)])
        assert r.returncode == 0
        assert "cache_size\": 5" in (target / "config.json").read_text(encoding="utf-8")

    def test_force_rewrites(self, tmp_path):
        target = tmp_path / "ws"
        run(["init", str(target)])
        (target / "config.json").write_text("{}", encoding="utf-8")
        r = run(["init", str(target), "--force"])
        assert r.returncode == 0
        assert "policy" in json.loads((target / "config.json").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# remember / show / forget
# ---------------------------------------------------------------------------


class TestRemember:
    def test_prints_id(self, mem):
        rid = remember(mem, "interaction", {"q": "hello"})
        assert len(rid) == 16

    def test_stdin_payload(self, mem):
        r = run(["remember", "configuration", "-q", *mem], stdin='{"theme": "material"}')
        assert r.returncode == 0
        assert r.stdout.strip()

    def test_identical_content_same_id(self, mem):
        assert remember(mem, "interaction", {"q": "x"}) == remember(mem, "interaction", {"q": "x"})

    def test_json_output(self, mem):
        r = run(["remember", "interaction", "--data", '{"q": 1}', "--tags", "a,b",
                 "--json", "-q", *mem])
        rec = json.loads(r.stdout)
        assert rec["metadata"]["tags"] == ["a", "b"]
        assert rec["checksum"]

    @pytest.mark.parametrize("payload", ["{broken", "[1, 2]", "   "])
    def test_bad_payload_exit_1(self, mem, payload):
        r = run(["remember", "interaction", "--data", payload, "-q", *mem])
        assert r.returncode == 1

    def test_missing_required_field_exit_1(self, mem):
        r = run(["remember", "recommendation", "--data", '{"score": 1}', "-q", *mem])
        assert r.returncode == 1
        assert "recommended" in r.stderr

    def test_unknown_type_rejected(self, mem):
        r = run(["remember", "gossip", "--data", "{}", *mem])
        assert r.returncode == 2  # argparse usage error


class TestShow:
    def test_show(self, populated):
        mem, ids = populated
        r = run(["show", ids["interaction"], *mem])
        assert r.returncode == 0
        assert "search, plugins" in r.stdout
        assert "how to add search" in r.stdout

    def test_show_json(self, populated):
        mem, ids = populated
        r = run(["show", ids["analysis"], "--json", *mem])
        assert json.loads(r.stdout)["metadata"]["projectId"] == "site"

    def test_show_missing(self, mem):
        r = run(["show", "0" * 16, *mem])
        assert r.returncode == 1
        assert "not found" in r.stderr


class TestForget:
    def test_forget(self, populated):
        mem, ids = populated
        r = run(["forget", ids["interaction"], "-q", *mem])
        assert r.returncode == 0
        assert run(["show", ids["interaction"], *mem]).returncode == 1

    def test_forget_missing(self, mem):
        assert run(["forget", "nope", *mem]).returncode == 1


# ---------------------------------------------------------------------------
# search / stats
# ---------------------------------------------------------------------------


class TestSearch:
    def test_by_project(self, populated):
        mem, ids = populated
        r = run(["search", "site", "--json", *mem])
        found = {rec["id"] for rec in json.loads(r.stdout)}
        assert found == {ids["analysis"], ids["deployment"]}

    def test_by_tag(self, populated):
        mem, ids = populated
        r = run(["search", "--tag", "plugins", "--json", *mem])
        assert [rec["id"] for rec in json.loads(r.stdout)] == [ids["interaction"]]

    def test_type_filter_and_limit(self, populated):
        mem, _ = populated
        r = run(["search", "--project", "site", "--type", "deployment", "--json", *mem])
        assert [rec["type"] for rec in json.loads(r.stdout)] == ["deployment"]
        r = run(["search", "--project", "site", "-k", "1", "--json", *mem])
        assert len(json.loads(r.stdout)) == 1

    def test_no_results(self, mem):
        r = run(["search", "nothing", *mem])
        assert r.returncode == 0
        assert "No matching records" in r.stderr


class TestStats:
    def test_json(self, populated):
        mem, _ = populated
        r = run(["stats", "--json", *mem])
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["status"] == "ok"
        assert data["store"]["total_entries"] == 3
        assert data["store"]["by_type"]["analysis"] == 1

    def test_text(self, populated):
        mem, _ = populated
        r = run(["stats", *mem])
        assert "Records:    3" in r.stdout

    def test_env_dir(self, populated):
        mem, _ = populated
        r = run(["stats", "--json"], env={"DOCMEMORY_DIR": mem[1]})
        assert json.loads(r.stdout)["store"]["total_entries"] == 3


# ---------------------------------------------------------------------------
# graph: build-graph / export / restore / verify
# ---------------------------------------------------------------------------


class TestGraphCommands:
    def test_build_graph(self, populated):
        mem, _ = populated
        r = run(["build-graph", "--json", *mem])
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["records"] == 3
        assert data["statistics"]["node_count"] >= 3

    def test_export(self, populated, tmp_path):
        mem, _ = populated
        run(["build-graph", "-q", *mem])
        out = tmp_path / "graph.json"
        r = run(["export", "-o", str(out), *mem])
        assert r.returncode == 0
        export = json.loads(out.read_text(encoding="utf-8"))
        ids = {e["id"] for e in export["entities"]}
        assert {"project:site", "tech:python", "tech:mkdocs"} <= ids
        assert export["metadata"]["relationshipCount"] == len(export["relationships"])

    def test_no_save(self, populated):
        mem, _ = populated
        run(["build-graph", "--no-save", "-q", *mem])
        r = run(["export", *mem])
        assert json.loads(r.stdout)["entities"] == []

    def test_restore_without_backup(self, mem):
        r = run(["restore", "entities", *mem])
        assert r.returncode == 1
        assert "No backups" in r.stderr

    def test_restore_roundtrip(self, populated):
        mem, ids = populated
        run(["build-graph", "-q", *mem])
        run(["forget", ids["analysis"], "-q", *mem])
        listing = run(["restore", "entities", "--list", *mem])
        assert listing.stdout.strip().startswith("entities-")
        r = run(["restore", "entities", "-q", *mem])
        assert r.returncode == 0
        export = json.loads(run(["export", *mem]).stdout)
        assert "tech:python" in {e["id"] for e in export["entities"]}

    def test_verify_clean(self, populated):
        mem, _ = populated
        run(["build-graph", "-q", *mem])
        r = run(["verify", "--json", *mem])
        assert r.returncode == 0
        assert json.loads(r.stdout)["valid"] is True

    def test_verify_detects_duplicates(self, populated):
        mem, _ = populated
        entities = os.path.join(mem[1], "graph", "knowledge-graph-entities.jsonl")
        with open(entities, "a", encoding="utf-8") as f:
            f.write('{"id": "tech:dup", "type": "technology"}\n' * 2)
        r = run(["verify", *mem])
        assert r.returncode == 1
        assert "Duplicate entity ID: tech:dup" in r.stdout


# ---------------------------------------------------------------------------
# prune / schedule
# ---------------------------------------------------------------------------


class TestPrune:
    def test_dry_run(self, populated):
        mem, _ = populated
        r = run(["prune", "--dry-run", "--json", *mem])
        assert r.returncode == 0
        data = json.loads(r.stdout)
        assert data["dry_run"] is True
        assert data["entries_removed"] == 0

    def test_run_on_fresh_records(self, populated):
        mem, _ = populated
        r = run(["prune", *mem])
        assert r.returncode == 0
        assert "Validation: passed" in r.stdout
        stats = json.loads(run(["stats", "--json", *mem]).stdout)
        assert stats["store"]["total_entries"] == 3


class TestSchedule:
    def test_preview(self, mem):
        r = run(["schedule", "0 3 * * 0", "--count", "2", *mem])
        assert r.returncode == 0
        lines = r.stdout.strip().splitlines()
        assert len(lines) == 2
        assert all("T03:00:00" in line for line in lines)

    def test_invalid_cron(self, mem):
        r = run(["schedule", "every sunday", *mem])
        assert r.returncode == 1
        assert "Invalid cron" in r.stderr


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class TestExitCodes:
    def test_no_command(self):
        assert run([]).returncode == 1

    def test_invalid_config(self, tmp_path):
        target = tmp_path / "mem"
        run(["init", str(target), "-q"])
        (target / "config.json").write_text('{"policy": {"max_age": -1}}', encoding="utf-8")
        r = run(["stats", "--dir", str(target)])
        assert r.returncode == 1
        assert "policy.max_age" in r.stderr

    def test_explicit_config_flag(self, tmp_path):
        target = tmp_path / "mem"
        run(["init", str(target), "-q"])
        bad = tmp_path / "bad.json"
        bad.write_text('{"manager": {"cache_size": -5}}', encoding="utf-8")
        r = run(["stats", "--dir", str(target), "--config", str(bad)])
        assert r.returncode == 1

    def test_foreign_partition(self, tmp_path):
        target = tmp_path / "mem"
        target.mkdir()
        (target / "notes.log").write_text("not a record log\n", encoding="utf-8")
        r = run(["stats", "--dir", str(target)])
        assert r.returncode == 1

    def test_storage_dir_is_a_file(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        r = run(["stats", "--dir", str(blocker)])
        assert r.returncode == 2
        assert "Storage error" in r.stderr
