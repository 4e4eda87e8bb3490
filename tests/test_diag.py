import threading
import unittest

from tests import _bootstrap  # noqa: F401
from dtpp.diag import Diagnostic, DiagnosticsSet, PreprocessorError, Severity


class DiagnosticTests(unittest.TestCase):
    def test_str(self) -> None:
        located = Diagnostic("pp", "a.h", "bad", 3, 7)
        self.assertEqual(str(located), "a.h:3:7: pp: bad")
        self.assertEqual(str(Diagnostic("pp", "a.h", "bad")), "a.h: pp: bad")

    def test_to_json(self) -> None:
        diagnostic = Diagnostic("lex", "a.h", "oops", 1, 2, "X-1", Severity.WARNING)
        payload = diagnostic.to_json()
        self.assertEqual(payload["severity"], "warning")
        self.assertEqual(payload["code"], "X-1")
        self.assertIsNone(payload["end_column"])

    def test_error_message_includes_offset(self) -> None:
        error = PreprocessorError("broken", 4)
        self.assertEqual(str(error), "broken at offset 4")
        self.assertEqual(error.message, "broken")


class DiagnosticsSetTests(unittest.TestCase):
    def test_grouped_by_file_in_order(self) -> None:
        diagnostics = DiagnosticsSet()
        first = diagnostics.push(Diagnostic("pp", "b.h", "one"))
        diagnostics.push(Diagnostic("pp", "a.h", "two", severity=Severity.WARNING))
        diagnostics.push(Diagnostic("pp", "b.h", "three"))
        self.assertEqual(first.filename, "b.h")
        self.assertEqual(diagnostics.files, ("b.h", "a.h"))
        self.assertEqual([d.message for d in diagnostics], ["one", "three", "two"])
        self.assertEqual([d.message for d in diagnostics.for_file("a.h")], ["two"])
        self.assertEqual(len(diagnostics.errors), 2)
        self.assertEqual(diagnostics.for_file("missing.h"), ())

    def test_merge(self) -> None:
        target = DiagnosticsSet([Diagnostic("pp", "a.h", "one")])
        target.merge(DiagnosticsSet([Diagnostic("pp", "b.h", "two")]))
        self.assertEqual(len(target), 2)

    def test_concurrent_pushes(self) -> None:
        diagnostics = DiagnosticsSet()

        def worker(name: str) -> None:
            for index in range(200):
                diagnostics.push(Diagnostic("pp", name, str(index)))

        threads = [threading.Thread(target=worker, args=(f"{n}.h",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(diagnostics), 800)
        for name in diagnostics.files:
            self.assertEqual(
                [d.message for d in diagnostics.for_file(name)], [str(i) for i in range(200)]
            )


if __name__ == "__main__":
    unittest.main()
