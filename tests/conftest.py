"""Shared pytest fixtures for spdk-sys tests."""

import shutil
from pathlib import Path

import pytest

from spdk_sys.config import BuildEnvironment

HAS_TOOLCHAIN = all(shutil.which(tool) for tool in ("cc", "ar", "make", "bash"))


def pytest_collection_modifyitems(config, items):
    if HAS_TOOLCHAIN:
        return
    skip = pytest.mark.skip(reason="needs cc, ar, make and bash on PATH")
    for item in items:
        if "toolchain" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "spdk"
    root.mkdir()
    return root


@pytest.fixture
def env(tmp_path: Path, source_root: Path) -> BuildEnvironment:
    return BuildEnvironment(
        out_dir=tmp_path / "out",
        jobs=4,
        target_arch="x86_64",
        source_root=source_root,
    )
