# Mock SIMIP instrument server for testing
import socket
import threading
import time
import logging
from typing import List, Optional, Sequence

from test_utils import STATUS_LINE, build_result_line

logger = logging.getLogger(__name__)

REPLY_TERMINATOR = "\r\n"


class MockSimipServer:
    """
    Mock SIMIP instrument speaking the line protocol on a loopback port.

    Behaviour knobs:
        version: Firmware version answered to ``Vers`` (None = stay silent)
        status_line: Line answered to ``Gets`` (None = stay silent)
        ack_mismatch: Answer ``SetConfig`` with a current one mA higher
        progress_script: ``BussyM`` lines answered to successive ``Data``
            requests before the result is reported
        result_line: Line answered to ``Data`` once progress is exhausted
        noise_prefix: Garbage prepended to every reply
    """

    def __init__(self, host='127.0.0.1', port=0,
                 version: Optional[str] = "1.4",
                 status_line: Optional[str] = STATUS_LINE,
                 ack_mismatch: bool = False,
                 progress_script: Sequence[str] = ("BussyMS00", "BussyMC01"),
                 result_line: Optional[str] = None,
                 noise_prefix: str = ""):
        self.host = host
        self.port = port
        self.version = version
        self.status_line = status_line
        self.ack_mismatch = ack_mismatch
        self.progress_script = list(progress_script)
        self.result_line = result_line or build_result_line()
        self.noise_prefix = noise_prefix

        self.running = False
        self.server = None
        self.clients: List[socket.socket] = []
        self.received: List[str] = []
        self._lock = threading.Lock()
        self._measuring = False
        self._pending_progress: List[str] = []

    def start(self):
        """Start the mock server. ``port`` holds the bound port afterwards."""
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind((self.host, self.port))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]
        self.running = True

        self.thread = threading.Thread(target=self._accept_loop, daemon=True)
        self.thread.start()
        logger.info(f"Mock SIMIP server started on {self.host}:{self.port}")

    def _accept_loop(self):
        while self.running:
            try:
                client, addr = self.server.accept()
            except OSError:
                break
            logger.info(f"Connection from {addr}")
            with self._lock:
                self.clients.append(client)
            threading.Thread(target=self._serve, args=(client,), daemon=True).start()

    def _serve(self, client: socket.socket):
        buffer = b""
        while self.running:
            try:
                data = client.recv(1024)
            except OSError:
                break
            if not data:
                break
            buffer += data
            while b"\n\r" in buffer:
                raw, buffer = buffer.split(b"\n\r", 1)
                command = raw.decode("utf-8")
                with self._lock:
                    self.received.append(command)
                for reply in self._replies_for(command):
                    self._send(client, reply)

    def _send(self, client: socket.socket, line: str):
        try:
            client.sendall((self.noise_prefix + line + REPLY_TERMINATOR).encode("utf-8"))
        except OSError as e:
            logger.debug(f"Send failed: {e}")

    def _replies_for(self, command: str) -> List[str]:
        if command == "Vers":
            return [] if self.version is None else [f"Ver{self.version}"]
        if command == "Gets":
            return [] if self.status_line is None else [self.status_line]
        if command.startswith("SetConfig,"):
            current, stack, time_s = command.split(",")[1:]
            if self.ack_mismatch:
                current = str(int(current) + 1).zfill(3)
            return [f"ResConf,{current},{stack},{time_s}"]
        if command == "Star":
            with self._lock:
                self._measuring = True
                self._pending_progress = list(self.progress_script)
            return ["ResStar"]
        if command == "Data":
            with self._lock:
                if not self._measuring:
                    return []
                if self._pending_progress:
                    return [self._pending_progress.pop(0)]
                self._measuring = False
            return [self.result_line]
        return []

    def commands(self) -> List[str]:
        with self._lock:
            return list(self.received)

    def drop_clients(self):
        """Close every client socket, as a device reboot would."""
        with self._lock:
            clients, self.clients = self.clients, []
        for client in clients:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            client.close()

    def stop(self):
        """Stop the mock server."""
        self.running = False
        if self.server:
            self.server.close()
        self.drop_clients()
        logger.info("Mock server stopped")


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    server = MockSimipServer(port=8888)
    server.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        server.stop()
