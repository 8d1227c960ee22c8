"""Build pipeline — fetch, configure, build, link, bindings."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

import structlog

from spdk_sys.bindings.generator import DEFAULT_HEADER, BindingGenerator
from spdk_sys.build.archives import ArchiveAggregator
from spdk_sys.build.configure import Configurator
from spdk_sys.build.native import NativeBuilder
from spdk_sys.build.source import SourceProvisioner
from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import StageError
from spdk_sys.links import SYSTEM_LINK_LIBRARIES, default_link_directives
from spdk_sys.logging.base import LogStore
from spdk_sys.models.build import ArchiveSet, GeneratedArtifacts
from spdk_sys.process import ToolRunner, run_tool
from spdk_sys.progress import ProgressTracker, StageProgress

logger = logging.getLogger(__name__)
log = structlog.get_logger("spdk_sys.pipeline")

STAGES: tuple[str, ...] = ("fetch", "configure", "build", "link", "bindings")

T = TypeVar("T")


class BuildPipeline:
    """
    Run the stages in order, stopping at the first failure.

    fetch:     SourceProvisioner.provision()
    configure: Configurator.configure()
    build:     NativeBuilder.build()
    link:      ArchiveAggregator.aggregate()
    bindings:  BindingGenerator.generate()

    ``link`` and ``bindings`` only read what ``build`` produced, so either
    can be run on its own against an already-built tree.
    """

    def __init__(
        self,
        env: BuildEnvironment,
        *,
        runner: ToolRunner = run_tool,
        provisioner: SourceProvisioner | None = None,
        configurator: Configurator | None = None,
        builder: NativeBuilder | None = None,
        aggregator: ArchiveAggregator | None = None,
        generator: BindingGenerator | None = None,
        log_store: LogStore | None = None,
        header: Path | None = None,
        system_libraries: tuple[str, ...] = SYSTEM_LINK_LIBRARIES,
    ) -> None:
        self.env = env
        self.provisioner = provisioner or SourceProvisioner(runner)
        self.configurator = configurator or Configurator(runner)
        self.builder = builder or NativeBuilder(runner)
        self.aggregator = aggregator or ArchiveAggregator(runner)
        self.generator = generator or BindingGenerator(runner=runner)
        self.log_store = log_store
        self.header = header or Path(DEFAULT_HEADER)
        self.system_libraries = system_libraries
        self.progress = ProgressTracker()

    def _new_progress(self) -> ProgressTracker:
        """Create a fresh ProgressTracker for each run."""
        tracker = ProgressTracker()
        if self.log_store:
            tracker.callbacks.append(self._log_stage_callback)
        return tracker

    def _log_stage_callback(self, stage: StageProgress) -> None:
        """Write stage status transitions to the LogStore."""
        if not self.log_store:
            return
        try:
            with self.log_store.get_writer(stage.stage) as writer:
                duration_str = f" ({stage.duration}s)" if stage.duration is not None else ""
                detail_str = f" {stage.detail}" if stage.detail else ""
                error_str = f" ERROR: {stage.error}" if stage.error else ""
                writer.write(f"[{stage.status}]{duration_str}{detail_str}{error_str}\n")
        except Exception:
            logger.debug("Failed to write stage log for %s", stage.stage, exc_info=True)

    def _record_diagnostic(self, stage: str, diagnostic: str) -> None:
        if not self.log_store or not diagnostic:
            return
        try:
            with self.log_store.get_writer(stage) as writer:
                writer.write(diagnostic if diagnostic.endswith("\n") else diagnostic + "\n")
        except Exception:
            logger.debug("Failed to write diagnostic for %s", stage, exc_info=True)

    def _stage(
        self,
        progress: ProgressTracker,
        name: str,
        action: Callable[[], T],
        describe: Callable[[T], str] | None = None,
    ) -> T:
        progress.start(name)
        log.info("stage.start", stage=name)
        try:
            result = action()
        except StageError as e:
            progress.fail(name, str(e))
            self._record_diagnostic(name, e.diagnostic)
            log.error("stage.failed", stage=name, error=str(e), returncode=e.returncode)
            raise
        detail = describe(result) if describe else ""
        progress.complete(name, detail=detail)
        log.info("stage.completed", stage=name, detail=detail)
        return result

    def run(self, stages: Sequence[str] = STAGES) -> GeneratedArtifacts:
        """Run *stages* (in pipeline order) and return the produced artifacts.

        Raises:
            StageError: the first failing stage's error; no later stage runs.
        """
        unknown = [s for s in stages if s not in STAGES]
        if unknown:
            raise ValueError(f"Unknown stages: {unknown}")
        if self.log_store:
            self.log_store.clear()
        progress = self._new_progress()
        self.progress = progress  # expose last run's progress for callers
        env = self.env
        directives = default_link_directives(
            env, self.header, system_libraries=self.system_libraries
        )
        archives = ArchiveSet(paths=())
        selected = set(stages)

        if "fetch" in selected:
            if self.provisioner.is_present(env.source_root):
                progress.skip("fetch", "already present")
                log.info("stage.skipped", stage="fetch", source_root=str(env.source_root))
            else:
                self._stage(
                    progress,
                    "fetch",
                    lambda: self.provisioner.provision(env),
                    lambda r: f"rc={r.returncode}",
                )
        if "configure" in selected:
            self._stage(progress, "configure", lambda: self.configurator.configure(env))
        if "build" in selected:
            self._stage(progress, "build", lambda: self.builder.build(env))
        if "link" in selected:
            archives = self._stage(
                progress,
                "link",
                lambda: self.aggregator.aggregate(env),
                lambda a: f"{len(a)} archives",
            )
        if "bindings" in selected:
            self._stage(
                progress,
                "bindings",
                lambda: self.generator.generate(env, self.header, directives),
                lambda p: p.name,
            )

        manifest = directives.write_manifest(env.manifest_path)
        return GeneratedArtifacts(
            bindings_path=env.bindings_path,
            library_path=env.library_path,
            directives=directives,
            manifest_path=manifest,
            archives=archives,
        )

    def summary(self) -> dict[str, Any]:
        return self.progress.get_summary()
