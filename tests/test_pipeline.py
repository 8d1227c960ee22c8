"""Tests for BuildPipeline stage ordering, failure propagation and artifacts."""

from __future__ import annotations

import importlib.util
import json
import textwrap
from pathlib import Path

import pytest

from spdk_sys.bindings.filter import DeclarationFilter
from spdk_sys.bindings.generator import BindingGenerator
from spdk_sys.build.archives import ArchiveAggregator
from spdk_sys.build.source import SourceProvisioner
from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import BuildError, ConfigureError, FetchError, LinkError
from spdk_sys.logging.local import LocalLogStore
from spdk_sys.pipeline import STAGES, BuildPipeline
from spdk_sys.testing import RecordingRunner

PREPROCESSED = """\
# 1 "wrapper.h"
# 1 "include/spdk/stub.h" 1
#define STUB_VERSION 3
struct stub_pair { int a; long b; };
int stub_clean(int x);
"""


def _built_tree(env: BuildEnvironment, *, checked_out: bool = True) -> None:
    """Lay out what a finished native build leaves behind."""
    if checked_out:
        (env.source_root / ".git").mkdir()
    env.main_lib_dir.mkdir(parents=True)
    env.dependency_lib_dir.mkdir(parents=True)
    (env.main_lib_dir / "libspdk_nvme.a").write_bytes(b"!<arch>\n")
    (env.dependency_lib_dir / "librte_eal.a").write_bytes(b"!<arch>\n")
    (env.include_dir / "spdk").mkdir(parents=True)


def _header(tmp_path: Path) -> Path:
    header = tmp_path / "wrapper.h"
    header.write_text("#include <spdk/stub.h>\n")
    return header


def _pipeline(env: BuildEnvironment, runner: RecordingRunner, tmp_path: Path, **kwargs) -> BuildPipeline:
    return BuildPipeline(
        env,
        runner=runner,
        log_store=LocalLogStore(env.log_dir),
        header=_header(tmp_path),
        **kwargs,
    )


class TestStageOrder:
    def test_full_run(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        runner = RecordingRunner({"cc": (0, PREPROCESSED, "")})
        pipeline = _pipeline(env, runner, tmp_path)

        artifacts = pipeline.run()

        tools = [cmd[:2] for cmd in runner.commands]
        assert tools == [
            ["bash", "./configure"],
            ["make", "-j4"],
            ["cc", "-shared"],
            ["cc", "-E"],
        ]
        assert artifacts.bindings_path.exists()
        assert "stub_clean" in artifacts.bindings_path.read_text()
        assert artifacts.archives.names == ["libspdk_nvme.a", "librte_eal.a"]
        assert artifacts.directives.libraries[0] == "spdk_fat"

        summary = pipeline.summary()
        assert [s["stage"] for s in summary["stages"]] == list(STAGES)
        assert summary["stages"][0]["status"] == "skipped"
        assert all(s["status"] == "completed" for s in summary["stages"][1:])
        assert summary["failed_stage"] is None

    def test_fetch_runs_when_tree_missing(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env, checked_out=False)
        runner = RecordingRunner({"cc": (0, PREPROCESSED, "")})
        _pipeline(env, runner, tmp_path).run()
        assert runner.commands[0][:3] == ["git", "submodule", "update"]

    def test_manifest_written(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        runner = RecordingRunner({"cc": (0, PREPROCESSED, "")})
        artifacts = _pipeline(env, runner, tmp_path).run()

        data = json.loads(artifacts.manifest_path.read_text())
        assert [lib["name"] for lib in data["libraries"]][:2] == ["spdk_fat", "aio"]

    def test_single_stage(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        runner = RecordingRunner()
        artifacts = _pipeline(env, runner, tmp_path).run(stages=("link",))

        assert len(runner.commands) == 1
        assert runner.commands[0][:2] == ["cc", "-shared"]
        assert len(artifacts.archives) == 2

    def test_unknown_stage_rejected(self, env: BuildEnvironment, tmp_path: Path):
        runner = RecordingRunner()
        with pytest.raises(ValueError, match="install"):
            _pipeline(env, runner, tmp_path).run(stages=("build", "install"))
        assert runner.calls == []


class TestFailurePropagation:
    def test_configure_failure_stops_pipeline(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        runner = RecordingRunner({"bash": (1, "", "configure: error: libaio not found\n")})
        pipeline = _pipeline(env, runner, tmp_path)

        with pytest.raises(ConfigureError) as exc_info:
            pipeline.run()

        assert exc_info.value.returncode == 1
        assert "libaio not found" in exc_info.value.diagnostic
        assert [cmd[0] for cmd in runner.commands] == ["bash"]
        assert pipeline.progress.failed_stage == "configure"
        assert pipeline.progress.status_of("build") == "pending"
        assert not env.library_path.exists()
        assert not env.bindings_path.exists()

        log = LocalLogStore(env.log_dir).read_log("configure")
        assert "[failed]" in log
        assert "libaio not found" in log

    def test_build_failure_keeps_exit_status(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        runner = RecordingRunner({"make": (2, "", "make: *** [lib] Error 2\n")})
        with pytest.raises(BuildError) as exc_info:
            _pipeline(env, runner, tmp_path).run()
        assert exc_info.value.returncode == 2
        assert exc_info.value.stage == "build"
        assert not any(cmd[0] == "cc" for cmd in runner.commands)

    def test_strict_fetch_failure(self, env: BuildEnvironment, tmp_path: Path):
        runner = RecordingRunner({"git": (128, "", "fatal: not a git repository\n")})
        with pytest.raises(FetchError):
            _pipeline(env, runner, tmp_path).run()
        assert [cmd[0] for cmd in runner.commands] == ["git"]

    def test_tolerated_fetch_failure_continues(self, env: BuildEnvironment, tmp_path: Path):
        runner = RecordingRunner(
            {
                "git": (128, "", "fatal: not a git repository\n"),
                "bash": (1, "", "./configure: No such file or directory\n"),
            }
        )
        pipeline = _pipeline(
            env,
            runner,
            tmp_path,
            provisioner=SourceProvisioner(runner, tolerate_failure=True),
        )
        with pytest.raises(ConfigureError):
            pipeline.run()
        assert pipeline.progress.status_of("fetch") == "completed"
        assert pipeline.progress.failed_stage == "configure"

    def test_missing_archives_fail_link(self, env: BuildEnvironment, tmp_path: Path):
        (env.source_root / ".git").mkdir()
        runner = RecordingRunner()
        with pytest.raises(LinkError, match="did the native build run"):
            _pipeline(env, runner, tmp_path).run()

    def test_log_store_cleared_between_runs(self, env: BuildEnvironment, tmp_path: Path):
        _built_tree(env)
        failing = RecordingRunner({"bash": 1})
        with pytest.raises(ConfigureError):
            _pipeline(env, failing, tmp_path).run()

        _pipeline(env, RecordingRunner({"cc": (0, PREPROCESSED, "")}), tmp_path).run()
        assert "[failed]" not in LocalLogStore(env.log_dir).read_log("configure")


_MAKEFILE = (
    "all:\n"
    "\tmkdir -p build/lib dpdk/build/lib build/include/spdk\n"
    "\tcc -fPIC -c stub.c -o stub.o\n"
    "\tar rcs build/lib/libspdk_stub.a stub.o\n"
    "\tcc -fPIC -c orphan.c -o orphan.o\n"
    "\tar rcs dpdk/build/lib/librte_orphan.a orphan.o\n"
    "\tcc -fPIC -c mock.c -o mock.o\n"
    "\tar rcs build/lib/libspdk_ut_mock.a mock.o\n"
    "\tcp stub.h build/include/spdk/stub.h\n"
)

_STUB_H = """\
struct stub_pair {
    int a;
    long b;
};

int stub_clean(int x);
int stub_hidden_fn(void);
int stub_orphan(void);
extern int stub_counter;
"""


@pytest.mark.toolchain
class TestEndToEnd:
    def test_stub_tree(self, env: BuildEnvironment, tmp_path: Path):
        root = env.source_root
        (root / ".git").mkdir()
        (root / "configure").write_text("#!/bin/bash\necho \"$@\" > configure.args\n")
        (root / "Makefile").write_text(_MAKEFILE)
        (root / "stub.h").write_text(_STUB_H)
        (root / "stub.c").write_text(
            textwrap.dedent(
                """\
                int stub_counter = 5;
                int stub_clean(int x) { return x + 1; }
                int stub_hidden_fn(void) { return 0; }
                """
            )
        )
        # Nothing references stub_orphan; only --whole-archive keeps it.
        (root / "orphan.c").write_text("int stub_orphan(void) { return 7; }\n")
        # Duplicate definition: linking the mock archive would fail.
        (root / "mock.c").write_text("int stub_clean(int x) { return -1; }\n")

        pipeline = BuildPipeline(
            env,
            aggregator=ArchiveAggregator(system_libraries=()),
            generator=BindingGenerator(
                DeclarationFilter(blocklisted_functions=frozenset({"stub_hidden_fn"}))
            ),
            log_store=LocalLogStore(env.log_dir),
            header=_header(tmp_path),
            system_libraries=(),
        )
        artifacts = pipeline.run()

        assert (root / "configure.args").read_text().strip() == "--without-isal"
        assert artifacts.library_path.stat().st_size > 0
        assert artifacts.archives.names == ["libspdk_stub.a", "librte_orphan.a"]

        source = artifacts.bindings_path.read_text()
        assert "stub_clean" in source
        assert "stub_hidden_fn" not in source

        spec = importlib.util.spec_from_file_location("stub_bindings", artifacts.bindings_path)
        bindings = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(bindings)

        assert bindings.stub_clean(41) == 42
        assert bindings.stub_orphan is not None
        assert bindings.stub_orphan() == 7
        assert bindings.stub_counter.value == 5
        pair = bindings.stub_pair(a=1, b=2)
        assert (pair.a, pair.b) == (1, 2)
