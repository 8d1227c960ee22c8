"""Binding generation — umbrella header in, ctypes module out."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import structlog

from spdk_sys.bindings.emit import CtypesEmitter
from spdk_sys.bindings.filter import SPDK_FILTER, DeclarationFilter
from spdk_sys.bindings.header import HeaderParser, preprocess
from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import ParseError
from spdk_sys.links import LinkDirectiveSet
from spdk_sys.models.declarations import TranslationUnit
from spdk_sys.process import ToolRunner, run_tool

log = structlog.get_logger("spdk_sys.bindings")

DEFAULT_HEADER = "wrapper.h"


class BindingGenerator:
    """Parse the umbrella header against the built include tree and emit bindings.

    The include tree only exists after the native build, so this stage must
    run after it.
    """

    def __init__(
        self,
        decl_filter: DeclarationFilter = SPDK_FILTER,
        runner: ToolRunner = run_tool,
        *,
        compiler: str = "cc",
        extra_args: Sequence[str] = (),
    ) -> None:
        self.decl_filter = decl_filter
        self._runner = runner
        self.compiler = compiler
        self.extra_args = tuple(extra_args)

    def parse(self, header: Path, include_dirs: Sequence[Path]) -> TranslationUnit:
        pre = preprocess(
            header,
            include_dirs,
            runner=self._runner,
            compiler=self.compiler,
            extra_args=self.extra_args,
            ignore_macro=self.decl_filter.ignores_macro,
        )
        return HeaderParser(pre).parse()

    def render(
        self,
        unit: TranslationUnit,
        *,
        directives: LinkDirectiveSet | None = None,
        header_name: str = DEFAULT_HEADER,
    ) -> str:
        emitter = CtypesEmitter(
            unit, self.decl_filter, directives=directives, header_name=header_name
        )
        source = emitter.emit()
        if emitter.omitted:
            log.info("bindings.omitted_total", count=len(emitter.omitted))
        try:
            compile(source, header_name.replace(".h", "_bindings.py"), "exec")
        except SyntaxError as e:
            raise ParseError(
                "Generated bindings are not valid Python",
                diagnostic=f"line {e.lineno}: {e.msg}",
            ) from e
        return source

    def generate(
        self,
        env: BuildEnvironment,
        header: Path,
        directives: LinkDirectiveSet | None = None,
    ) -> Path:
        """Write ``env.bindings_path``.

        Raises:
            ParseError: the include tree is missing, or the header does not
                preprocess or parse.
        """
        if not env.include_dir.is_dir():
            raise ParseError(
                f"Include directory not found: {env.include_dir} (did the native build run?)"
            )
        log.info("bindings.start", header=str(header), include_dir=str(env.include_dir))
        unit = self.parse(header, [env.include_dir])
        source = self.render(unit, directives=directives, header_name=header.name)

        env.bindings_path.parent.mkdir(parents=True, exist_ok=True)
        env.bindings_path.write_text(source)
        log.info("bindings.written", path=str(env.bindings_path), size=len(source))
        return env.bindings_path
