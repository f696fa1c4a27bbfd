import asyncio
import logging

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Running backend processes keyed by the local session id."""

    def __init__(self):
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def register(self, process_id: str, process: asyncio.subprocess.Process) -> None:
        self._processes[process_id] = process

    def unregister(self, process_id: str, process: asyncio.subprocess.Process) -> bool:
        """Remove the entry if it still belongs to ``process``.

        Returns False when the process was already stopped through ``stop``.
        """
        if self._processes.get(process_id) is process:
            del self._processes[process_id]
            return True
        return False

    def get(self, process_id: str) -> asyncio.subprocess.Process | None:
        return self._processes.get(process_id)

    def stop(self, process_id: str) -> bool:
        process = self._processes.pop(process_id, None)
        if process is None:
            return False
        _terminate(process)
        return True

    def stop_all(self) -> None:
        processes = list(self._processes.values())
        self._processes.clear()
        for process in processes:
            _terminate(process)

    def __len__(self) -> int:
        return len(self._processes)


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        logger.debug("Process %s already exited", process.pid)
