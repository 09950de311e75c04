"""
SoloApp Main - Single-instance coordination for one application identity.

This module ties the pieces together for an application that wants exactly
one running primary instance:
    - Identifier derivation (See also: identity_hasher.py)
    - Election through shared memory (See also: elector.py)
    - Primary: local socket listener (See also: listener.py)
    - Secondary: connection to the primary (See also: connector.py)

Lifecycle:
    app = SoloApp("Editor", org_name="Acme")
    app.on_message_received(handle)
    role = app.start()
    ...
    app.shutdown()

Threading model:
    - Caller thread: start(), send_message(), shutdown()
    - Listener thread (primary only): callbacks registered with
      on_instance_started() and on_message_received() run here

Command line:
    python -m soloapp.main --app-name Editor --message "open foo.txt"
    The first invocation becomes primary and prints incoming messages; later
    invocations forward --message to it and exit.
"""

import argparse
import logging
import os
import sys
import threading
from typing import Callable, Iterable, List, Optional

from soloapp.config.config import Config
from soloapp.identity.identity_hasher import identifier_for
from soloapp.ipc.connector import Connector
from soloapp.ipc.listener import Listener
from soloapp.ipc.protocol import ConnectionKind
from soloapp.memory.elector import Election, Elector, Role
from soloapp.util.user_util import current_os_user

logger = logging.getLogger(__name__)


class SoloApp:
    """
    Single-instance coordinator for one application identity.

    Attributes:
        config: Options controlling scope, notifications and timeouts
        identifier: Derived identifier (set by start())
        election: Outcome of the election (set by start())
        listener: Running listener when primary
        connector: Connection to the primary when secondary

    Args:
        app_name: Application name
        org_name: Organization name
        org_domain: Organization domain
        version: Application version
        executable_path: Path mixed into the identifier, defaults to sys.argv[0]
        extra_tokens: Additional data distinguishing instance groups
        config: Options, loaded from the user config file when omitted
        endpoint_dir: Directory of the socket endpoint, defaults to the temp dir
    """

    def __init__(
        self,
        app_name: str,
        org_name: str = "",
        org_domain: str = "",
        version: str = "",
        executable_path: Optional[str] = None,
        extra_tokens: Iterable[str] = (),
        config: Optional[Config] = None,
        endpoint_dir: Optional[str] = None,
    ) -> None:
        self.app_name = app_name
        self.org_name = org_name
        self.org_domain = org_domain
        self.version = version
        self.executable_path = executable_path
        self.extra_tokens = list(extra_tokens)
        self.config = config or Config()
        self.endpoint_dir = endpoint_dir

        self.identifier: Optional[str] = None
        self.election: Optional[Election] = None
        self.elector: Optional[Elector] = None
        self.listener: Optional[Listener] = None
        self.connector: Optional[Connector] = None

        self._instance_started_callbacks: List[Callable[[], None]] = []
        self._message_callbacks: List[Callable[[int, bytes], None]] = []
        self._callback_lock = threading.Lock()

    def add_app_data(self, token: str) -> None:
        """Append a token to the identifier input. Only effective before start()."""
        self.extra_tokens.append(token)

    def app_data(self) -> List[str]:
        return list(self.extra_tokens)

    def on_instance_started(self, callback: Callable[[], None]) -> None:
        with self._callback_lock:
            self._instance_started_callbacks.append(callback)

    def on_message_received(self, callback: Callable[[int, bytes], None]) -> None:
        with self._callback_lock:
            self._message_callbacks.append(callback)

    def start(self) -> Role:
        """
        Elect this process and bring up its side of the protocol.

        Primary: starts the listener.
        Secondary with allow_secondary: notifies the primary only when
        secondary notification is enabled.
        Secondary without allow_secondary: connects with NEW_INSTANCE so the
        primary can react (e.g. raise its window); the caller is expected to
        exit afterwards.

        Returns:
            Role: PRIMARY or SECONDARY

        Raises:
            InitializationError: Shared memory or lock unusable
            OSError: The primary's endpoint could not be bound
        """
        self.identifier = identifier_for(
            self.config,
            self.app_name,
            self.org_name,
            self.org_domain,
            extra_tokens=self.extra_tokens,
            version=self.version,
            executable_path=self.executable_path,
            user_name=current_os_user(),
        )
        self.elector = Elector(self.identifier)
        self.election = self.elector.try_become_primary()

        if self.election.is_primary:
            self.listener = Listener(
                self.identifier,
                on_instance_started=self._emit_instance_started,
                on_message_received=self._emit_message_received,
                user_scoped=self.config.user_scoped,
                secondary_notification=self.config.secondary_notification,
                directory=self.endpoint_dir,
            )
            try:
                self.listener.start()
            except OSError:
                self.elector.resign(self.election.block)
                raise
            return Role.PRIMARY

        self.connector = Connector(self.identifier, self.election.instance_id, directory=self.endpoint_dir)
        if self.config.allow_secondary:
            if self.config.secondary_notification:
                self.connector.connect(self.config.timeout_ms, ConnectionKind.SECONDARY_INSTANCE)
        elif not self.connector.connect(self.config.timeout_ms, ConnectionKind.NEW_INSTANCE):
            logger.warning("Primary instance of %s did not answer within %d ms", self.app_name, self.config.timeout_ms)

        return Role.SECONDARY

    def is_primary(self) -> bool:
        return self.election is not None and self.election.is_primary

    def is_secondary(self) -> bool:
        return self.election is not None and not self.election.is_primary

    def instance_id(self) -> int:
        """0 for the primary, 1.. for secondaries in attach order."""
        return self.election.instance_id if self.election else 0

    def primary_pid(self) -> int:
        """PID recorded in the coordination block, -1 if none or corrupt."""
        if self.election is None:
            return -1
        with self.election.block.locked() as accessor:
            if not accessor.is_valid():
                return -1
            return accessor.read().primary_pid

    def primary_user(self) -> str:
        """User recorded in the coordination block, "" if none or corrupt."""
        if self.election is None:
            return ""
        with self.election.block.locked() as accessor:
            if not accessor.is_valid():
                return ""
            return accessor.read().primary_user

    def current_user(self) -> str:
        return current_os_user()

    def send_message(
        self,
        payload: bytes,
        timeout_ms: Optional[int] = None,
        block_until_primary_exit: bool = False,
    ) -> bool:
        """
        Forward payload to the primary instance.

        Args:
            payload: Opaque bytes, delivered unchanged
            timeout_ms: Defaults to config.timeout_ms; applies to connecting
                and to the message separately
            block_until_primary_exit: After delivery, wait until the primary
                closes the connection

        Returns:
            bool: True if the primary acknowledged the message
        """
        if self.is_primary() or self.connector is None:
            return False

        if timeout_ms is None:
            timeout_ms = self.config.timeout_ms

        if not self.connector.connect(timeout_ms, ConnectionKind.RECONNECT):
            return False
        if not self.connector.send_message(payload, timeout_ms):
            return False

        if block_until_primary_exit:
            self.connector.wait_for_disconnect()
        return True

    def shutdown(self) -> None:
        """Release everything; the primary leaves the block in "no primary" state."""
        if self.listener is not None:
            self.listener.stop()
            self.listener = None

        if self.connector is not None:
            self.connector.close()
            self.connector = None

        if self.election is not None:
            election, self.election = self.election, None
            if election.is_primary:
                # Unlinks the block even if the reset times out; that error propagates
                self.elector.resign(election.block)
            else:
                election.block.close()

    def __enter__(self) -> "SoloApp":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def _emit_instance_started(self) -> None:
        with self._callback_lock:
            callbacks = list(self._instance_started_callbacks)
        for callback in callbacks:
            callback()

    def _emit_message_received(self, instance_id: int, payload: bytes) -> None:
        with self._callback_lock:
            callbacks = list(self._message_callbacks)
        for callback in callbacks:
            callback(instance_id, payload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soloapp",
        description="Run a single-instance application or forward a message to its primary instance.",
    )
    parser.add_argument("--app-name", default="soloapp")
    parser.add_argument("--org-name", default="")
    parser.add_argument("--org-domain", default="")
    parser.add_argument("--version", dest="app_version", default="")
    parser.add_argument("--message", default=None, help="Message forwarded to the primary")
    parser.add_argument("--timeout-ms", type=int, default=None)
    parser.add_argument("--wait", action="store_true", help="Secondary waits until the primary exits")
    parser.add_argument("--reset-config", action="store_true", help="Reset config to bundled defaults")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = Config()
    if args.timeout_ms is not None:
        config.timeout_ms = args.timeout_ms

    app = SoloApp(
        args.app_name,
        org_name=args.org_name,
        org_domain=args.org_domain,
        version=args.app_version,
        config=config,
    )

    stop = threading.Event()
    app.on_instance_started(lambda: print("Another instance started", flush=True))
    app.on_message_received(
        lambda instance_id, payload: print(
            f"[{instance_id}] {payload.decode('utf-8', errors='replace')}", flush=True
        )
    )

    role = app.start()
    try:
        if role is Role.PRIMARY:
            print(f"Primary instance running (pid {os.getpid()}), Ctrl+C to quit", flush=True)
            try:
                while not stop.wait(0.5):
                    pass
            except KeyboardInterrupt:
                pass
            return 0

        print(f"Secondary instance {app.instance_id()} (primary pid {app.primary_pid()})", flush=True)
        if args.message is None:
            return 0
        sent = app.send_message(args.message.encode("utf-8"), block_until_primary_exit=args.wait)
        return 0 if sent else 1
    finally:
        app.shutdown()


if __name__ == "__main__":
    sys.exit(main())
