"""PID file for the scheduler daemon."""

import os
from pathlib import Path
from typing import Optional

PID_FILENAME = "tenant-jobs.pid"


def _process_alive(pid: int) -> bool:
    try:
        # Signal 0 only checks that the process exists
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class PIDFile:
    """PID file tracking a running daemon.

    Several daemons may share a database, but only one per data
    directory is tracked here so ``run status`` and ``run stop`` have a
    process to talk to.

    Example:
        pid_file = PIDFile.for_data_dir(config.data_dir)
        if pid_file.is_running():
            raise SystemExit(f"Already running as PID {pid_file.read()}")
        with pid_file:
            ...
    """

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_data_dir(cls, data_dir: Path) -> "PIDFile":
        return cls(Path(data_dir) / PID_FILENAME)

    def create(self) -> None:
        """Write the current process ID, creating the parent directory."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n")

    def remove(self) -> None:
        """Remove the file if it belongs to this process."""
        if self.read() in (None, os.getpid()):
            self.path.unlink(missing_ok=True)

    def read(self) -> Optional[int]:
        """PID in the file, or None when missing or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def is_running(self) -> bool:
        """Whether the recorded process is alive."""
        pid = self.read()
        return pid is not None and _process_alive(pid)

    def get_pid(self) -> Optional[int]:
        """PID of the running daemon, or None."""
        return self.read() if self.is_running() else None

    def clear_if_stale(self) -> bool:
        """Delete the file when its process is gone.

        Returns:
            True if a stale file was removed
        """
        pid = self.read()
        if pid is None or _process_alive(pid):
            return False
        self.path.unlink(missing_ok=True)
        return True

    def __enter__(self) -> "PIDFile":
        self.create()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.remove()
