"""
Connector - Reach the primary instance from a secondary instance.

Connect strategy:
    1. Sleep a random 8-17 ms so simultaneously started secondaries do not
       hammer the endpoint in lockstep
    2. Try to connect with the time left until the deadline
    3. Repeat until connected or the deadline passes; the first attempt
       is made even when the jitter alone used up the timeout

Once connected the init message is sent as a confirmed message: header frame,
wait for the ack byte, body frame, wait for the ack byte. Payloads use the
same two-frame exchange.

Every method returns False on refusal, timeout, reset or a missing ack, and
closes the socket so the next call starts from scratch. Nothing is retried
beyond the connect loop; the caller decides whether to try again.

See also:
    - listener.py: The primary's side
    - protocol.py: Frame and init message encoding
"""

import logging
import socket
from typing import Optional

from soloapp.ipc.protocol import ConnectionKind, encode_header, encode_init_message
from soloapp.util.path_util import endpoint_path
from soloapp.util.timing_util import Deadline, random_sleep

logger = logging.getLogger(__name__)


class Connector:
    """
    One outbound connection from a secondary to the primary. Not re-entrant.

    Args:
        identifier: Identifier of the primary to reach
        instance_id: This secondary's instance number
        directory: Endpoint directory, defaults to the temp directory
    """

    def __init__(self, identifier: str, instance_id: int, directory: Optional[str] = None) -> None:
        self.identifier = identifier
        self.instance_id = instance_id
        self.path = endpoint_path(identifier, directory)
        self._sock: Optional[socket.socket] = None

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, timeout_ms: int, connection_kind: ConnectionKind) -> bool:
        """
        Connect to the primary and complete the handshake.

        Args:
            timeout_ms: Total time budget for connecting and handshaking
            connection_kind: Reason for connecting, reported to the primary

        Returns:
            bool: True if connected (or already connected), False otherwise
        """
        if self._sock is not None:
            return True

        deadline = Deadline(timeout_ms)
        while True:
            random_sleep()

            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(deadline.remaining())
            try:
                sock.connect(self.path)
                break
            except OSError as e:
                sock.close()
                logger.debug("Connecting to %s failed: %s", self.path, e)

            if deadline.expired():
                logger.debug("Timed out connecting to %s", self.path)
                return False

        self._sock = sock
        init_message = encode_init_message(self.identifier, connection_kind, self.instance_id)
        return self._write_confirmed_message(deadline, init_message)

    def send_message(self, payload: bytes, timeout_ms: int) -> bool:
        """
        Send payload to the primary and wait for it to be acknowledged.

        Requires a successful connect() first.
        """
        if self._sock is None:
            return False
        return self._write_confirmed_message(Deadline(timeout_ms), payload)

    def wait_for_disconnect(self, timeout_ms: Optional[int] = None) -> bool:
        """
        Block until the primary closes the connection.

        Args:
            timeout_ms: Milliseconds to wait, None to wait indefinitely

        Returns:
            bool: True once the primary disconnected, False on timeout
        """
        if self._sock is None:
            return True

        deadline = Deadline(timeout_ms)
        try:
            while True:
                if deadline.expired():
                    return False
                self._sock.settimeout(deadline.remaining())
                if not self._sock.recv(4096):
                    break
        except (socket.timeout, BlockingIOError):
            # A zero timeout makes the socket non-blocking
            return False
        except OSError:
            pass

        self.close()
        return True

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _write_confirmed_message(self, deadline: Deadline, message: bytes) -> bool:
        if (
            self._write_confirmed_frame(deadline, encode_header(len(message)))
            and self._write_confirmed_frame(deadline, message)
        ):
            return True

        self.close()
        return False

    def _write_confirmed_frame(self, deadline: Deadline, frame: bytes) -> bool:
        if deadline.expired():
            return False

        try:
            self._sock.settimeout(deadline.remaining())
            self._sock.sendall(frame)
            self._sock.settimeout(deadline.remaining())
            ack = self._sock.recv(1)
        except OSError as e:
            logger.debug("Confirmed write to %s failed: %s", self.path, e)
            return False

        return len(ack) == 1
