import asyncio, logging, os, signal
from typing import Callable, Optional

from .realtime import Broadcaster

log = logging.getLogger("host")

def _terminate_self() -> None:
    os.kill(os.getpid(), signal.SIGTERM)

class HostController:
    """Restarts Homebridge by terminating this process; the service manager brings it back."""

    def __init__(self, broadcaster: Optional[Broadcaster] = None, grace_seconds: float = 0.75,
                 terminate: Callable[[], None] = _terminate_self):
        self.broadcaster = broadcaster
        self.grace_seconds = grace_seconds
        self._terminate = terminate

    async def restart(self, reason: str) -> None:
        log.warning("Restarting Homebridge (%s)", reason)
        if self.broadcaster:
            self.broadcaster.publish("notice", {"message": f"Restarting Homebridge now ({reason})."})
        # let the notice reach listeners before the process goes away
        await asyncio.sleep(self.grace_seconds)
        self._terminate()
