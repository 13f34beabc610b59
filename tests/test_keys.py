from __future__ import annotations

import os
import unittest

from bk import TerminalError, decode_escape, read_key, translate_key


class KeyTranslationTests(unittest.TestCase):
    def test_control_bytes_map_to_named_keys(self) -> None:
        self.assertEqual(translate_key("\r"), "ENTER")
        self.assertEqual(translate_key("\n"), "ENTER")
        self.assertEqual(translate_key("\x7f"), "BACKSPACE")
        self.assertEqual(translate_key("\b"), "BACKSPACE")
        self.assertEqual(translate_key("\x03"), "QUIT")
        self.assertEqual(translate_key("\t"), "TAB")
        self.assertEqual(translate_key("q"), "q")

    def test_escape_sequences(self) -> None:
        self.assertEqual(decode_escape(""), "ESC")
        self.assertEqual(decode_escape("[A"), "UP")
        self.assertEqual(decode_escape("OB"), "DOWN")
        self.assertEqual(decode_escape("[C"), "")


class ReadKeyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.read_fd, self.write_fd = os.pipe()
        self.addCleanup(os.close, self.read_fd)

    def _feed(self, data: bytes, close: bool = False) -> None:
        os.write(self.write_fd, data)
        if close:
            os.close(self.write_fd)
        else:
            self.addCleanup(os.close, self.write_fd)

    def test_reads_arrow_keys_and_text_in_order(self) -> None:
        self._feed(b"\x1b[Aj\x1b[B\r")
        keys = [read_key(self.read_fd) for _ in range(4)]
        self.assertEqual(keys, ["UP", "j", "DOWN", "ENTER"])

    def test_application_mode_arrows(self) -> None:
        self._feed(b"\x1bOA")
        self.assertEqual(read_key(self.read_fd), "UP")

    def test_lone_escape_is_cancel(self) -> None:
        self._feed(b"\x1b")
        self.assertEqual(read_key(self.read_fd), "ESC")

    def test_multibyte_character_is_one_key(self) -> None:
        self._feed("é".encode("utf-8"))
        self.assertEqual(read_key(self.read_fd), "é")

    def test_closed_terminal_raises(self) -> None:
        self._feed(b"", close=True)
        with self.assertRaises(TerminalError):
            read_key(self.read_fd)


if __name__ == "__main__":
    unittest.main()
