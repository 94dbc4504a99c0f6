"""
Log aggregation for services: merges runtime output streams into one prefixed feed.
"""
import queue
import threading
from typing import Callable, Dict, Optional

from ..RUNTIME.base import ContainerRuntime

_DONE = object()


class LogAggregator:
    """
    Follows the output streams of one or more containers.
    """
    def __init__(self, runtime: ContainerRuntime, sink: Callable[[str], None] = print):
        """
        Initializes the log aggregator.

        :param runtime: Runtime the streams are read from.
        :param sink: Receives each formatted line.
        """
        self.runtime = runtime
        self.sink = sink

    def follow(self,
               containers: Dict[str, str],
               stop_event: Optional[threading.Event] = None,
               follow: bool = True) -> int:
        """
        Relays output from the given containers until every stream ends or
        `stop_event` is set.

        :param containers: Service name -> container id.
        :param stop_event: Set by another thread to stop following.
        :param follow: Keep streaming new output instead of returning what exists.
        :return: Number of lines relayed.
        """
        stop_event = stop_event or threading.Event()
        lines: "queue.Queue" = queue.Queue()
        width = max((len(name) for name in containers), default=0)

        def pump(name: str, container_id: str):
            pending = b""
            try:
                for chunk in self.runtime.stream_logs(container_id, follow=follow):
                    if stop_event.is_set():
                        break
                    pending += chunk
                    *complete, pending = pending.split(b"\n")
                    for line in complete:
                        lines.put((name, line))
                if pending:
                    lines.put((name, pending))
            finally:
                lines.put((name, _DONE))

        threads = [
            threading.Thread(target=pump, args=(name, container_id), daemon=True)
            for name, container_id in containers.items()
        ]
        for thread in threads:
            thread.start()

        relayed = 0
        open_streams = len(threads)
        while open_streams and not stop_event.is_set():
            try:
                name, line = lines.get(timeout=0.1)
            except queue.Empty:
                continue
            if line is _DONE:
                open_streams -= 1
                continue
            text = line.decode("utf-8", errors="replace").rstrip("\r")
            self.sink(f"{name:{width}} | {text}")
            relayed += 1
        return relayed
