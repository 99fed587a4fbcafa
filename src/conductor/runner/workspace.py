"""Scoped ephemeral working directories for job attempts.

``ScopedWorkdir`` creates a private directory before a tool runs and
removes it on every exit path, including errors and cancellation. A
failure to create the directory aborts the attempt; a failure to remove
it is logged and reported through ``cleanup_error`` so the runner can
attach it to the job result as a warning.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from conductor.core.errors import ResourceError
from conductor.core.logging import get_logger

_logger = get_logger("runner.workspace")


class ScopedWorkdir:
    """Context manager owning one temporary job directory.

    Usage::

        with ScopedWorkdir(job_id) as workdir:
            (workdir / "playbook.yml").write_text(playbook)
            ...
        # directory is gone here, even if the block raised
    """

    def __init__(self, job_id: str, *, root: Path | None = None) -> None:
        self.job_id = job_id
        self.root = root
        self.path: Path | None = None
        self.cleanup_error: str | None = None

    def __enter__(self) -> Path:
        try:
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
            self.path = Path(tempfile.mkdtemp(prefix=f"job-{self.job_id}-", dir=self.root))
        except OSError as exc:
            raise ResourceError(
                f"Could not create working directory: {exc}",
                path=str(self.root) if self.root else None,
            ) from exc
        _logger.debug("workspace.created", job_id=self.job_id, path=str(self.path))
        return self.path

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the directory. Safe to call more than once."""
        if self.path is None:
            return
        path, self.path = self.path, None
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            self.cleanup_error = f"Failed to remove working directory {path}: {exc}"
            _logger.warning(
                "workspace.cleanup_failed",
                job_id=self.job_id,
                path=str(path),
                error=str(exc),
            )
            return
        _logger.debug("workspace.removed", job_id=self.job_id, path=str(path))


__all__ = ["ScopedWorkdir"]
