"""
Unit tests for the coordination block layout and accessor.

BlockAccessor works on any writable buffer, so these tests run against a
plain bytearray instead of real shared memory.
"""

import struct
import unittest
from unittest.mock import Mock, patch

import posix_ipc

from soloapp.ipc.protocol import crc16
from soloapp.memory.coordination_block import (
    BLOCK_SIZE,
    BODY_SIZE,
    BlockAccessor,
    BlockLockTimeout,
    BlockState,
    CoordinationBlock,
    lock_name_for,
)


class TestBlockLayout(unittest.TestCase):

    def test_sizes(self) -> None:
        self.assertEqual(BODY_SIZE, 144)
        self.assertEqual(BLOCK_SIZE, 146)

    def test_field_offsets(self) -> None:
        buf = bytearray(BLOCK_SIZE)
        BlockAccessor(buf).write(
            BlockState(is_primary=True, secondary_count=3, primary_pid=4242, primary_user="alice")
        )

        self.assertEqual(buf[0], 1)
        self.assertEqual(struct.unpack_from("<I", buf, 4)[0], 3)
        self.assertEqual(struct.unpack_from("<q", buf, 8)[0], 4242)
        self.assertEqual(bytes(buf[16:21]), b"alice")
        self.assertEqual(buf[21], 0)
        self.assertEqual(struct.unpack_from("<H", buf, 144)[0], crc16(bytes(buf[:144])))

    def test_lock_name_is_short_and_deterministic(self) -> None:
        name = lock_name_for("some-identifier")
        self.assertEqual(name, lock_name_for("some-identifier"))
        self.assertNotEqual(name, lock_name_for("other-identifier"))
        self.assertTrue(name.startswith("/"))
        self.assertLessEqual(len(name), 31)


class TestBlockAccessor(unittest.TestCase):

    def setUp(self) -> None:
        self.buf = bytearray(BLOCK_SIZE)
        self.accessor = BlockAccessor(self.buf)

    def test_checksum_is_computed_over_body_only(self) -> None:
        self.buf[BODY_SIZE:] = b"\xFF\xFF"
        self.assertEqual(self.accessor.computed_checksum(), crc16(bytes(BODY_SIZE)))
        self.assertEqual(self.accessor.stored_checksum(), 0xFFFF)

    def test_reset_writes_no_primary_state(self) -> None:
        self.buf[:] = b"\xAA" * BLOCK_SIZE
        self.accessor.reset()

        self.assertTrue(self.accessor.is_valid())
        self.assertEqual(self.accessor.read(), BlockState())
        self.assertEqual(self.accessor.read().primary_pid, -1)

    def test_checksum_holds_after_every_write(self) -> None:
        states = [
            BlockState(is_primary=True, primary_pid=1, primary_user="root"),
            BlockState(is_primary=True, secondary_count=1, primary_pid=1, primary_user="root"),
            BlockState(is_primary=True, secondary_count=2, primary_pid=1, primary_user="root"),
            BlockState(secondary_count=2),
        ]
        for state in states:
            self.accessor.write(state)
            self.assertTrue(self.accessor.is_valid())
            self.assertEqual(self.accessor.stored_checksum(), self.accessor.computed_checksum())
            self.assertEqual(self.accessor.read(), state)

    def test_corrupting_any_body_byte_is_detected(self) -> None:
        self.accessor.write(BlockState(is_primary=True, secondary_count=7, primary_pid=99, primary_user="bob"))
        pristine = bytes(self.buf)

        for offset in range(BODY_SIZE):
            self.buf[:] = pristine
            self.buf[offset] ^= 0x01
            self.assertFalse(self.accessor.is_valid(), f"corruption at byte {offset} went unnoticed")

    def test_long_user_name_is_truncated_with_terminator(self) -> None:
        self.accessor.write(BlockState(primary_user="u" * 300))

        self.assertEqual(self.accessor.read().primary_user, "u" * 127)
        self.assertEqual(self.buf[16 + 127], 0)

    def test_truncated_multibyte_user_decodes_cleanly(self) -> None:
        name = "é" * 100  # 200 bytes in UTF-8
        self.accessor.write(BlockState(primary_user=name))
        self.assertEqual(self.accessor.read().primary_user, "é" * 63)

    def test_accessor_is_unusable_after_invalidation(self) -> None:
        self.accessor._invalidate()
        with self.assertRaises(RuntimeError):
            self.accessor.read()
        with self.assertRaises(RuntimeError):
            self.accessor.write(BlockState())


class TestRelease(unittest.TestCase):
    """
    release() with the segment and semaphore mocked out.

    The resource tracker is patched so unlink() does not talk to the real
    tracker process about a fake segment name.
    """

    def setUp(self) -> None:
        self.patcher_tracker = patch("soloapp.memory.coordination_block.resource_tracker")
        self.patcher_tracker.start()

        self.segment = Mock()
        self.segment.buf = bytearray(BLOCK_SIZE)
        BlockAccessor(self.segment.buf).write(BlockState(is_primary=True, secondary_count=2, primary_pid=9))
        self.semaphore = Mock()
        self.block = CoordinationBlock("ident", self.segment, self.semaphore, created=True)

    def tearDown(self) -> None:
        self.patcher_tracker.stop()

    def test_release_resets_then_unlinks(self) -> None:
        self.block.release()

        self.assertEqual(BlockAccessor(self.segment.buf).read(), BlockState(secondary_count=2))
        self.semaphore.release.assert_called_once_with()
        self.segment.close.assert_called_once_with()
        self.segment.unlink.assert_called_once_with()

    def test_lock_timeout_still_unlinks_segment(self) -> None:
        self.semaphore.acquire.side_effect = posix_ipc.BusyError("lock busy")

        with self.assertRaises(BlockLockTimeout):
            self.block.release()

        self.segment.close.assert_called_once_with()
        self.semaphore.close.assert_called_once_with()
        self.segment.unlink.assert_called_once_with()

    def test_release_after_close_only_unlinks(self) -> None:
        self.block.close()
        self.block.release()

        self.semaphore.acquire.assert_not_called()
        self.segment.unlink.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
