"""
Listener - Local socket server run by the primary instance.

The listener binds a Unix domain socket named after the identifier and
services every connection from one daemon thread using a selector. Each
accepted socket gets a ConnectionSession; the session table maps the socket's
file descriptor to (socket, session) and is consulted on every readiness
event.

Threading model:
    - Listener thread: accept, read, ack, and invoke the application callbacks
    - Caller thread: start() and stop() only
    A socket pair wakes the selector when stop() is called.

Access control:
    - user_scoped=True: endpoint mode 0o600 (only the invoking user)
    - user_scoped=False: endpoint mode 0o777 (every local user)

Edge cases:
    - Stale endpoint left by a crashed primary: removed before binding
    - Handshake rejected: socket closed without a reply, no callback
    - Peer closes right after sending: buffered frames are still delivered
    - Callback raises: logged, the loop keeps running

See also:
    - connection_session.py: Per-connection state machine
    - connector.py: The secondary's side of the conversation
"""

import logging
import os
import selectors
import socket
import threading
from typing import Callable, Dict, Optional, Tuple

from soloapp.ipc.connection_session import Ack, ConnectionSession, InstanceStarted, MessageReceived
from soloapp.ipc.protocol import ACK, HandshakeRejected
from soloapp.util.path_util import endpoint_path

logger = logging.getLogger(__name__)

RECV_SIZE = 65536

_ACCEPT = "accept"
_WAKE = "wake"
_SESSION = "session"


class Listener:
    """
    Accepts connections from secondary instances and delivers their messages.

    Args:
        identifier: Identifier naming the endpoint
        on_instance_started: Called with no arguments when a qualifying
            connection completes its handshake
        on_message_received: Called with (instance_id, payload) per message
        user_scoped: Restrict the endpoint to the current user
        secondary_notification: Also signal instance starts for
            SECONDARY_INSTANCE connections
        directory: Endpoint directory, defaults to the temp directory
    """

    def __init__(
        self,
        identifier: str,
        on_instance_started: Optional[Callable[[], None]] = None,
        on_message_received: Optional[Callable[[int, bytes], None]] = None,
        user_scoped: bool = False,
        secondary_notification: bool = False,
        directory: Optional[str] = None,
    ) -> None:
        self.identifier = identifier
        self.on_instance_started = on_instance_started
        self.on_message_received = on_message_received
        self.user_scoped = user_scoped
        self.secondary_notification = secondary_notification
        self.path = endpoint_path(identifier, directory)

        self._server: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None
        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        self._sessions: Dict[int, Tuple[socket.socket, ConnectionSession]] = {}
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def start(self) -> None:
        """
        Bind the endpoint and start the listener thread.

        Raises:
            OSError: The endpoint cannot be created or bound
        """
        if self._running:
            return

        try:
            os.unlink(self.path)
            logger.debug("Removed stale endpoint %s", self.path)
        except FileNotFoundError:
            pass

        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(self.path)
            os.chmod(self.path, 0o600 if self.user_scoped else 0o777)
            server.listen()
            server.setblocking(False)
        except OSError:
            server.close()
            raise

        self._server = server
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._selector = selectors.DefaultSelector()
        self._selector.register(server, selectors.EVENT_READ, _ACCEPT)
        self._selector.register(self._wake_r, selectors.EVENT_READ, _WAKE)

        self._running = True
        self._thread = threading.Thread(target=self.serve_forever, name="soloapp-listener", daemon=True)
        self._thread.start()
        logger.info("Listening on %s", self.path)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop, close every connection and remove the endpoint."""
        if not self._running:
            return

        self._running = False
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        logger.info("Stopped listening on %s", self.path)

    def serve_forever(self) -> None:
        """Selector loop; runs on the listener thread until stop()."""
        try:
            while self._running:
                for key, _ in self._selector.select():
                    if key.data == _ACCEPT:
                        self._accept()
                    elif key.data == _WAKE:
                        self._wake_r.recv(RECV_SIZE)
                    else:
                        self._read(key.fd)
        finally:
            self._teardown()

    def _accept(self) -> None:
        try:
            conn, _ = self._server.accept()
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning("Accepting connection on %s failed: %s", self.path, e)
            return

        conn.setblocking(False)
        session = ConnectionSession(self.identifier, self.secondary_notification)
        self._sessions[conn.fileno()] = (conn, session)
        self._selector.register(conn, selectors.EVENT_READ, _SESSION)
        logger.debug("Accepted connection %d", conn.fileno())

    def _read(self, fd: int) -> None:
        entry = self._sessions.get(fd)
        if entry is None:
            return
        conn, session = entry

        try:
            data = conn.recv(RECV_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("Connection %d failed: %s", fd, e)
            data = b""

        if not data:
            # Peer closed: deliver what is already buffered, then drop it
            try:
                events = session.drain()
            except HandshakeRejected as e:
                logger.debug("Rejected handshake on closing connection %d: %s", fd, e)
                events = []
            self._dispatch(None, events)
            self._close_session(fd)
            return

        try:
            events = session.feed(data)
        except HandshakeRejected as e:
            logger.debug("Rejected handshake on connection %d: %s", fd, e)
            self._close_session(fd)
            return

        if not self._dispatch(conn, events):
            self._close_session(fd)

    def _dispatch(self, conn: Optional[socket.socket], events) -> bool:
        """
        Act on session events in order.

        Acks are skipped when conn is None or once an ack could not be sent;
        signals and messages are delivered regardless.

        Returns:
            bool: False if an ack failed and the connection should be closed
        """
        healthy = True
        for event in events:
            if isinstance(event, Ack):
                if conn is None:
                    continue
                try:
                    conn.send(ACK)
                except OSError as e:
                    logger.debug("Sending ack failed: %s", e)
                    conn = None
                    healthy = False
            elif isinstance(event, InstanceStarted):
                self._notify(self.on_instance_started)
            elif isinstance(event, MessageReceived):
                self._notify(self.on_message_received, event.instance_id, event.payload)
        return healthy

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Listener callback %r raised", callback)

    def _close_session(self, fd: int) -> None:
        entry = self._sessions.pop(fd, None)
        if entry is None:
            return
        conn, _ = entry
        try:
            self._selector.unregister(conn)
        except (KeyError, ValueError):
            pass
        conn.close()
        logger.debug("Closed connection %d", fd)

    def _teardown(self) -> None:
        for fd in list(self._sessions):
            self._close_session(fd)

        self._selector.close()
        self._server.close()
        self._wake_r.close()
        self._wake_w.close()

        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
