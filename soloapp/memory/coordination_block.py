"""
Coordination Block - Fixed-layout shared memory record of the election state.

Every instance of an application maps the same small shared memory segment,
named by the identifier. It records whether a primary is active, how many
secondaries have attached, and the primary's PID and user.

Layout (little-endian, 146 bytes):
    [000]     is_primary        bool, followed by 3 padding bytes
    [004-007] secondary_count   u32
    [008-015] primary_pid       i64 (-1 when no primary)
    [016-143] primary_user      128 bytes UTF-8, NUL padded
    [144-145] checksum          u16 CRC-16 over bytes 0-143 (must stay last)

Access rules:
    - Creation uses shm_open(O_CREAT | O_EXCL) through SharedMemory(create=True).
      Exactly one of any number of racing processes succeeds.
    - Every read and write happens inside locked(), which holds a named POSIX
      semaphore. The yielded BlockAccessor copies state in and out and stops
      working when the context exits.
    - write() recomputes the checksum. A reader that sees a mismatch treats
      the block as corrupt or not yet initialized.

Segment lifetime:
    The primary resets the block to "no primary" and unlinks the name on
    shutdown. Processes that still map the segment keep a valid reset block.
    The semaphore is never unlinked; a process may hold it at any time.

See also:
    - elector.py: Decides primary or secondary using this block
    - protocol.py: crc16() used for the checksum
"""

import hashlib
import logging
import struct
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from multiprocessing import resource_tracker, shared_memory
from typing import Iterator, Optional

import posix_ipc

from soloapp.ipc.protocol import crc16

logger = logging.getLogger(__name__)

BODY_FORMAT = "<?3xIq128s"
BODY_SIZE = struct.calcsize(BODY_FORMAT)
CHECKSUM_FORMAT = "<H"
BLOCK_SIZE = BODY_SIZE + struct.calcsize(CHECKSUM_FORMAT)

USER_FIELD_SIZE = 128

# Seconds to wait for the block lock before giving up
DEFAULT_LOCK_TIMEOUT = 5.0

# Python 3.13 can opt out of resource tracking at construction time
_HAS_TRACK_PARAM = sys.version_info >= (3, 13)


class BlockExistsError(FileExistsError):
    """Another process already created the coordination block."""


class BlockNotFoundError(FileNotFoundError):
    """No coordination block exists under the identifier."""


class BlockLockTimeout(TimeoutError):
    """The block lock could not be acquired in time."""


@dataclass(frozen=True)
class BlockState:
    """Copy of the coordination block fields, detached from shared memory."""

    is_primary: bool = False
    secondary_count: int = 0
    primary_pid: int = -1
    primary_user: str = ""


def lock_name_for(identifier: str) -> str:
    """Semaphore name for identifier (short enough for macOS' 31 char limit)."""
    return "/sa" + hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:16]


def _encode_user(user: str) -> bytes:
    # Keep one byte for the terminating NUL
    return user.encode("utf-8")[:USER_FIELD_SIZE - 1]


def _decode_user(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("utf-8", errors="ignore")


def _open_segment(name: str, create: bool) -> shared_memory.SharedMemory:
    """
    Open the segment without handing it to multiprocessing's resource tracker.

    The tracker unlinks tracked segments when the process exits, which would
    destroy the primary's block whenever a secondary exits.
    """
    if _HAS_TRACK_PARAM:
        return shared_memory.SharedMemory(name=name, create=create, size=BLOCK_SIZE, track=False)

    segment = shared_memory.SharedMemory(name=name, create=create, size=BLOCK_SIZE)
    resource_tracker.unregister(segment._name, "shared_memory")
    return segment


class BlockAccessor:
    """
    Lock-scoped view of the block, handed out by CoordinationBlock.locked().

    All methods raise RuntimeError once the owning lock has been released.
    """

    def __init__(self, buf) -> None:
        self._buf = buf

    def _require_buf(self):
        if self._buf is None:
            raise RuntimeError("BlockAccessor used outside of its lock")
        return self._buf

    def _invalidate(self) -> None:
        self._buf = None

    def stored_checksum(self) -> int:
        (checksum,) = struct.unpack_from(CHECKSUM_FORMAT, self._require_buf(), BODY_SIZE)
        return checksum

    def computed_checksum(self) -> int:
        return crc16(bytes(self._require_buf()[:BODY_SIZE]))

    def is_valid(self) -> bool:
        return self.stored_checksum() == self.computed_checksum()

    def read(self) -> BlockState:
        is_primary, secondary_count, primary_pid, raw_user = struct.unpack_from(
            BODY_FORMAT, self._require_buf()
        )
        return BlockState(
            is_primary=is_primary,
            secondary_count=secondary_count,
            primary_pid=primary_pid,
            primary_user=_decode_user(raw_user),
        )

    def write(self, state: BlockState) -> None:
        buf = self._require_buf()
        struct.pack_into(
            BODY_FORMAT,
            buf,
            0,
            state.is_primary,
            state.secondary_count,
            state.primary_pid,
            _encode_user(state.primary_user),
        )
        struct.pack_into(CHECKSUM_FORMAT, buf, BODY_SIZE, crc16(bytes(buf[:BODY_SIZE])))

    def reset(self) -> None:
        """Zero the block and write the checksummed "no primary" state."""
        buf = self._require_buf()
        buf[:BLOCK_SIZE] = bytes(BLOCK_SIZE)
        self.write(BlockState())


class CoordinationBlock:
    """
    Handle on the shared coordination block of one identifier.

    Use create_exclusive() or attach() to obtain one; never construct directly.

    Attributes:
        identifier: Identifier naming the segment
        created: True if this process created the segment
    """

    def __init__(self, identifier: str, segment, semaphore, created: bool) -> None:
        self.identifier = identifier
        self.created = created
        self._segment = segment
        self._semaphore = semaphore
        self._closed = False

    @staticmethod
    def _open_lock(identifier: str):
        return posix_ipc.Semaphore(
            lock_name_for(identifier),
            flags=posix_ipc.O_CREAT,
            mode=0o600,
            initial_value=1,
        )

    @classmethod
    def create_exclusive(
        cls,
        identifier: str,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
        initial_state: Optional[BlockState] = None,
    ):
        """
        Create the segment, failing if it already exists.

        The new block is zeroed and written with initial_state (the "no
        primary" state when omitted) in one critical section, so attaching
        processes only ever see the finished state once they hold the lock.

        Args:
            identifier: Identifier naming the segment
            lock_timeout: Seconds to wait for the block lock
            initial_state: State the block starts in, e.g. the creator's claim

        Raises:
            BlockExistsError: The segment already exists (lost the race)
            BlockLockTimeout: The fresh block's lock could not be taken
            OSError: Any other shared memory or semaphore failure
        """
        try:
            segment = _open_segment(identifier, create=True)
        except FileExistsError as e:
            raise BlockExistsError(f"coordination block {identifier!r} already exists") from e

        try:
            semaphore = cls._open_lock(identifier)
        except posix_ipc.Error:
            segment.close()
            segment.unlink()
            raise

        block = cls(identifier, segment, semaphore, created=True)
        try:
            with block.locked(timeout=lock_timeout) as accessor:
                accessor.reset()
                if initial_state is not None:
                    accessor.write(initial_state)
        except Exception:
            block.close()
            block.unlink()
            raise

        logger.debug("Created coordination block %s", identifier)
        return block

    @classmethod
    def attach(cls, identifier: str):
        """
        Map an existing segment.

        Raises:
            BlockNotFoundError: No segment with this name exists
            OSError: Any other shared memory or semaphore failure
        """
        try:
            segment = _open_segment(identifier, create=False)
        except FileNotFoundError as e:
            raise BlockNotFoundError(f"coordination block {identifier!r} not found") from e
        except ValueError as e:
            # Creator has opened the name but not sized it yet
            raise BlockNotFoundError(f"coordination block {identifier!r} not sized yet") from e

        try:
            semaphore = cls._open_lock(identifier)
        except posix_ipc.Error:
            segment.close()
            raise

        logger.debug("Attached to coordination block %s", identifier)
        return cls(identifier, segment, semaphore, created=False)

    @contextmanager
    def locked(self, timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT) -> Iterator[BlockAccessor]:
        """
        Hold the block lock and yield an accessor valid only inside the block.

        Args:
            timeout: Seconds to wait for the lock, None to wait forever

        Raises:
            BlockLockTimeout: Lock not acquired within timeout
        """
        if self._closed:
            raise RuntimeError("coordination block is closed")

        if timeout is not None and not posix_ipc.SEMAPHORE_TIMEOUT_SUPPORTED:
            timeout = None

        try:
            self._semaphore.acquire(timeout)
        except posix_ipc.BusyError as e:
            raise BlockLockTimeout(f"timed out waiting for lock of {self.identifier!r}") from e

        accessor = BlockAccessor(self._segment.buf)
        try:
            yield accessor
        finally:
            accessor._invalidate()
            self._semaphore.release()

    def read(self) -> BlockState:
        """Snapshot the block under the lock."""
        with self.locked() as accessor:
            return accessor.read()

    def close(self) -> None:
        """Unmap the segment and close the semaphore handle. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._segment.close()
        self._semaphore.close()

    def unlink(self) -> None:
        """Remove the segment name so a later process can create it afresh."""
        if not _HAS_TRACK_PARAM:
            # SharedMemory.unlink() unregisters the name from the tracker
            resource_tracker.register(self._segment._name, "shared_memory")
        try:
            self._segment.unlink()
        except FileNotFoundError:
            if not _HAS_TRACK_PARAM:
                resource_tracker.unregister(self._segment._name, "shared_memory")
            logger.debug("Coordination block %s already unlinked", self.identifier)

    def release(self) -> None:
        """
        Reset the block to "no primary", then unmap and unlink it.

        Other processes may still map the segment; they keep seeing the valid
        reset state. The segment is unmapped and unlinked even when the reset
        fails, so the next launch creates a fresh block.

        Raises:
            BlockLockTimeout: The reset could not take the lock
        """
        try:
            if not self._closed:
                with self.locked() as accessor:
                    accessor.write(BlockState(secondary_count=accessor.read().secondary_count))
        finally:
            self.close()
            self.unlink()
