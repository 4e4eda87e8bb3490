import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from tests import _bootstrap  # noqa: F401
from dtpp import main


class CliTests(unittest.TestCase):
    def _run_main(self, argv: list[str], *, stdin_text: str = "") -> tuple[int, str, str]:
        stdout = io.StringIO()
        stderr = io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = main(argv, stdin=io.StringIO(stdin_text))
        return code, stdout.getvalue(), stderr.getvalue()

    def test_main_success(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "board.dts"
            path.write_text("#define CELLS 2\n/ {\n\t#size-cells = <CELLS>;\n};\n", encoding="utf-8")
            code, stdout, stderr = self._run_main([str(path)])
        self.assertEqual(code, 0)
        self.assertEqual(stderr, "")
        self.assertEqual(stdout, "/ {\n\t#size-cells = <2>;\n};\n")

    def test_main_reads_stdin(self) -> None:
        code, stdout, stderr = self._run_main(["-", "-DVALUE=7"], stdin_text="x = VALUE;\n")
        self.assertEqual(code, 0)
        self.assertEqual(stderr, "")
        self.assertEqual(stdout, "x = 7;\n")

    def test_main_defines_and_undefs(self) -> None:
        source = "#ifdef GONE\ngone\n#endif\nA B\n"
        code, stdout, _ = self._run_main(
            ["-", "-DA", "-DB=two", "-DGONE", "-UGONE"], stdin_text=source
        )
        self.assertEqual(code, 0)
        self.assertEqual(stdout, "1 two\n")

    def test_main_builtins(self) -> None:
        source = "__FILE__:__LINE__\n"
        _, stdout, _ = self._run_main(["-"], stdin_text=source)
        self.assertEqual(stdout, '"<stdin>":1\n')
        _, stdout, _ = self._run_main(["-", "--no-builtins"], stdin_text=source)
        self.assertEqual(stdout, "__FILE__:__LINE__\n")

    def test_main_include_dirs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "include").mkdir()
            (root / "include" / "irq.h").write_text("#define IRQ_TYPE_LEVEL_HIGH 4\n", encoding="utf-8")
            path = root / "board.dts"
            path.write_text("#include <irq.h>\nIRQ_TYPE_LEVEL_HIGH\n", encoding="utf-8")
            code, stdout, stderr = self._run_main(
                [str(path), "-I", str(root / "include"), "--dump-includes"]
            )
        self.assertEqual(code, 0)
        self.assertEqual(stderr, "")
        self.assertIn(f"{path}:1: #include irq.h -> ", stdout)
        self.assertIn("irq.h\n", stdout)

    def test_main_dump_lines(self) -> None:
        code, stdout, _ = self._run_main(
            ["-", "--dump-lines"], stdin_text="#define A 100\n\nx = A + A;\n"
        )
        self.assertEqual(code, 0)
        self.assertEqual(stdout, "<stdin>:3: x = 100 + 100; [A@4, A@8]\n")

    def test_main_dump_macro_table(self) -> None:
        source = "#define A 1\n#define F(x, ...) x + __VA_ARGS__\n"
        code, stdout, stderr = self._run_main(["-", "--dump-macro-table"], stdin_text=source)
        self.assertEqual(code, 0)
        self.assertEqual(stderr, "")
        self.assertEqual(stdout, "A=1\nF(x,...)=x + __VA_ARGS__\n")

    def test_main_reports_errors(self) -> None:
        code, stdout, stderr = self._run_main(["-"], stdin_text="#error broken\nafter\n")
        self.assertEqual(code, 1)
        self.assertEqual(stdout, "after\n")
        self.assertEqual(stderr, "<stdin>:1:1: pp: broken [error]\n")

    def test_main_warnings_do_not_fail(self) -> None:
        code, _, stderr = self._run_main(["-"], stdin_text="#warning careful\n")
        self.assertEqual(code, 0)
        self.assertEqual(stderr, "<stdin>:1:1: pp: careful [warning]\n")

    def test_main_json_diagnostics(self) -> None:
        code, _, stderr = self._run_main(
            ["-", "--diag-format", "json"], stdin_text="#frobnicate\n"
        )
        self.assertEqual(code, 1)
        payload = json.loads(stderr)
        self.assertEqual(payload["filename"], "<stdin>")
        self.assertEqual(payload["line"], 1)
        self.assertEqual(payload["severity"], "error")
        self.assertEqual(payload["code"], "DTPP-PP-0101")

    def test_main_invalid_define(self) -> None:
        code, stdout, stderr = self._run_main(["-", "-D1BAD"])
        self.assertEqual(code, 2)
        self.assertEqual(stdout, "")
        self.assertIn("Invalid macro definition: 1BAD", stderr)

    def test_main_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            code, stdout, stderr = self._run_main([str(Path(tmp) / "missing.dts")])
        self.assertEqual(code, 1)
        self.assertEqual(stdout, "")
        self.assertIn("dtpp: I/O error:", stderr)

    def test_main_usage_error(self) -> None:
        code, _, stderr = self._run_main([])
        self.assertEqual(code, 2)
        self.assertIn("usage: dtpp", stderr)


if __name__ == "__main__":
    unittest.main()
