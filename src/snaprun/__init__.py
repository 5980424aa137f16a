"""
snaprun - run a command against a repository in a disposable sandbox, then
analyze, fix and re-verify it while keeping every stage's evidence on disk.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("snaprun")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
