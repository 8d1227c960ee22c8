"""spdk-sys: build SPDK into one shared library and generate ctypes bindings."""

from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import (
    BuildError,
    ConfigureError,
    FetchError,
    LinkError,
    ParseError,
    SpdkSysError,
    StageError,
)
from spdk_sys.pipeline import BuildPipeline

__version__ = "0.1.0"

__all__ = [
    "BuildEnvironment",
    "BuildPipeline",
    "BuildError",
    "ConfigureError",
    "FetchError",
    "LinkError",
    "ParseError",
    "SpdkSysError",
    "StageError",
]
