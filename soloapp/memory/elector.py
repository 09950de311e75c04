"""
Elector - Decide whether this process is the primary or a secondary instance.

Election strategy:
    1. Try to create the coordination block exclusively. The OS guarantees
       that only one racing process succeeds; that process becomes primary
       and its claim is in the block before any other process can lock it.
    2. Everyone else attaches to the existing block and, under its lock,
       increments the secondary counter. The new count is the instance id.
    3. If the attached block is left in the "no primary" state by a primary
       that shut down cleanly, the attaching process takes over as primary.

Edge cases:
    - Checksum mismatch after attach: the creator may still be initializing.
      Wait with the lock released; after block_init_timeout the block is
      reinitialized.
    - Block vanished between the failed create and the attach: the whole
      sequence is retried once, then InitializationError is raised.

See also:
    - coordination_block.py: Shared memory and lock primitives
    - main.py: Starts the listener once this process is elected primary
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from soloapp.memory.coordination_block import (
    DEFAULT_LOCK_TIMEOUT,
    BlockExistsError,
    BlockNotFoundError,
    BlockState,
    CoordinationBlock,
)
from soloapp.util.timing_util import random_sleep
from soloapp.util.user_util import current_os_user

logger = logging.getLogger(__name__)

# Seconds a checksum mismatch is tolerated before the block is reinitialized
DEFAULT_BLOCK_INIT_TIMEOUT = 5.0


class InitializationError(RuntimeError):
    """Election could not complete because of an OS resource failure."""


class Role(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass
class Election:
    """Outcome of try_become_primary()."""

    role: Role
    instance_id: int
    block: CoordinationBlock

    @property
    def is_primary(self) -> bool:
        return self.role is Role.PRIMARY


class Elector:
    """
    Runs the create-or-attach race for one identifier.

    Args:
        identifier: Identifier naming the coordination block
        current_user: Capability returning the OS user name
        pid: Capability returning this process' id
        block_init_timeout: Seconds to wait for a valid checksum
        lock_timeout: Seconds to wait for the block lock
    """

    def __init__(
        self,
        identifier: str,
        current_user: Callable[[], str] = current_os_user,
        pid: Callable[[], int] = os.getpid,
        block_init_timeout: float = DEFAULT_BLOCK_INIT_TIMEOUT,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.identifier = identifier
        self.current_user = current_user
        self.pid = pid
        self.block_init_timeout = block_init_timeout
        self.lock_timeout = lock_timeout

    def try_become_primary(self) -> Election:
        """
        Elect this process as primary or register it as a secondary.

        Returns:
            Election: Role, instance id (0 for the primary) and the block handle

        Raises:
            InitializationError: Shared memory or lock could not be used
        """
        for attempt in range(2):
            try:
                return self._elect()
            except BlockNotFoundError:
                if attempt == 0:
                    logger.debug("Coordination block vanished during election, retrying")
                    random_sleep()
                    continue
                raise InitializationError(
                    f"coordination block {self.identifier!r} disappeared twice during election"
                )
            except (OSError, TimeoutError) as e:
                raise InitializationError(f"election for {self.identifier!r} failed: {e}") from e

    def _elect(self) -> Election:
        try:
            # The claim is written while the fresh block is still locked
            block = CoordinationBlock.create_exclusive(
                self.identifier,
                lock_timeout=self.lock_timeout,
                initial_state=self._claimed_state(0),
            )
        except BlockExistsError:
            block = CoordinationBlock.attach(self.identifier)
            try:
                return self._join(block)
            except Exception:
                block.close()
                raise

        logger.info("Elected primary instance for %s (pid %d)", self.identifier, self.pid())
        return Election(Role.PRIMARY, 0, block)

    def _claimed_state(self, secondary_count: int) -> BlockState:
        return BlockState(
            is_primary=True,
            secondary_count=secondary_count,
            primary_pid=self.pid(),
            primary_user=self.current_user(),
        )

    def _claim(self, accessor, secondary_count: int) -> None:
        accessor.write(self._claimed_state(secondary_count))

    def _join(self, block: CoordinationBlock) -> Election:
        deadline = time.monotonic() + self.block_init_timeout

        while True:
            with block.locked(timeout=self.lock_timeout) as accessor:
                if not accessor.is_valid():
                    if time.monotonic() < deadline:
                        valid = False
                    else:
                        logger.warning("Coordination block %s is corrupt, reinitializing", self.identifier)
                        accessor.reset()
                        valid = True
                else:
                    valid = True

                if valid:
                    state = accessor.read()

                    if not state.is_primary:
                        self._claim(accessor, state.secondary_count)
                        logger.info(
                            "Took over inactive coordination block %s as primary (pid %d)",
                            self.identifier,
                            self.pid(),
                        )
                        return Election(Role.PRIMARY, 0, block)

                    instance_id = state.secondary_count + 1
                    accessor.write(
                        BlockState(
                            is_primary=state.is_primary,
                            secondary_count=instance_id,
                            primary_pid=state.primary_pid,
                            primary_user=state.primary_user,
                        )
                    )
                    logger.info(
                        "Registered secondary instance %d of %s (primary pid %d)",
                        instance_id,
                        self.identifier,
                        state.primary_pid,
                    )
                    return Election(Role.SECONDARY, instance_id, block)

            # Checksum not valid yet; give the creator time to initialize
            random_sleep()

    def resign(self, block: CoordinationBlock) -> None:
        """
        Reset the block to "no primary" and unlink it. Primary shutdown only.

        A block already unlinked by someone else is tolerated.
        """
        block.release()
        logger.info("Resigned as primary instance for %s", self.identifier)
