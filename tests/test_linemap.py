import unittest

from tests import _bootstrap  # noqa: F401
from dtpp.defines import Define
from dtpp.linemap import Line, MacroInstance, replace

_A = Define("A")
_FOO = Define("FOO", parameters=("x",))


def _two_span_line() -> Line:
    # raw:  "A + FOO(1) + B"
    # text: "100 + 77 + B"
    return Line.build(
        "A + FOO(1) + B",
        4,
        "board.dts",
        [MacroInstance(_FOO, "FOO(1)", "77", 4), MacroInstance(_A, "A", "100", 0)],
    )


class LineTests(unittest.TestCase):
    def test_build_orders_macros_and_replaces(self) -> None:
        line = _two_span_line()
        self.assertEqual(line.text, "100 + 77 + B")
        self.assertEqual([macro.start for macro in line.macros], [0, 4])
        self.assertEqual(len(line), 12)

    def test_raw_pos_round_trip(self) -> None:
        line = _two_span_line()
        cases = [
            # (expanded offset, prefer_start result, prefer_end result)
            (0, 0, 0),
            (1, 0, 1),
            (2, 0, 1),
            (3, 1, 1),
            (5, 3, 3),
            (6, 4, 4),
            (7, 4, 10),
            (8, 10, 10),
            (11, 13, 13),
            (12, 14, 14),
        ]
        for offset, start, end in cases:
            with self.subTest(offset=offset):
                self.assertEqual(line.raw_pos(offset, True), start)
                self.assertEqual(line.raw_pos(offset, False), end)

    def test_raw_pos_clamps(self) -> None:
        line = _two_span_line()
        self.assertEqual(line.raw_pos(-5), 0)
        self.assertEqual(line.raw_pos(99), len(line.raw))

    def test_remap_range(self) -> None:
        line = _two_span_line()
        self.assertEqual(line.remap(6, 8), (4, 10))
        self.assertEqual(line.remap(1, 2), (0, 1))
        self.assertEqual(line.remap(0, len(line)), (0, len(line.raw)))

    def test_line_without_macros_is_identity(self) -> None:
        line = Line.build("plain text", 1, "a.h")
        self.assertEqual(line.text, "plain text")
        for offset in range(len(line) + 1):
            self.assertEqual(line.raw_pos(offset), offset)

    def test_build_with_masked_base(self) -> None:
        raw = "A /* note */"
        line = Line.build(raw, 2, "a.h", [MacroInstance(_A, "A", "100", 0)], base="A           ")
        self.assertEqual(line.text, "100")
        self.assertEqual(line.raw, raw)

    def test_macro_at_and_contains(self) -> None:
        line = _two_span_line()
        self.assertIs(line.macro_at(5).define, _FOO)
        self.assertIsNone(line.macro_at(2))
        self.assertTrue(line.contains("board.dts", 4))
        self.assertFalse(line.contains("board.dts", 5))

    def test_replace_back_to_front(self) -> None:
        macros = [MacroInstance(_A, "A", "long", 0), MacroInstance(_A, "A", "x", 2)]
        self.assertEqual(replace("A A", macros), "long x")


if __name__ == "__main__":
    unittest.main()
