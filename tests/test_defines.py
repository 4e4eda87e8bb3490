import unittest

from tests import _bootstrap  # noqa: F401
from dtpp.defines import (
    Define,
    DefineError,
    DefineTable,
    MacroKind,
    builtin_defines,
    macro_table_lines,
    parse_cli_define,
    parse_define,
)


class ParseDefineTests(unittest.TestCase):
    def test_object_like(self) -> None:
        define = parse_define(" ZERO  0 ", filename="a.h", line=3)
        self.assertEqual(define.name, "ZERO")
        self.assertIs(define.kind, MacroKind.OBJECT_LIKE)
        self.assertIsNone(define.parameters)
        self.assertEqual(define.value, "0")
        self.assertEqual((define.filename, define.line), ("a.h", 3))

    def test_empty_body(self) -> None:
        define = parse_define("NO_VALUE")
        self.assertEqual(define.body, ())
        self.assertEqual(define.value, "")

    def test_function_like(self) -> None:
        define = parse_define("ADD(a, b) a + b")
        self.assertIs(define.kind, MacroKind.FUNCTION_LIKE)
        self.assertTrue(define.is_function_like)
        self.assertEqual(define.parameters, ("a", "b"))
        self.assertEqual(define.value, "a + b")

    def test_space_before_parenthesis_is_object_like(self) -> None:
        define = parse_define("SPACED (a) a")
        self.assertIs(define.kind, MacroKind.OBJECT_LIKE)
        self.assertEqual(define.value, "(a) a")

    def test_no_parameters(self) -> None:
        define = parse_define("NONE() valid")
        self.assertEqual(define.parameters, ())
        self.assertTrue(define.is_function_like)

    def test_variadic_parameters(self) -> None:
        define = parse_define("LOG(fmt, ...) fmt __VA_ARGS__")
        self.assertEqual(define.parameters, ("fmt",))
        self.assertTrue(define.is_variadic)
        self.assertEqual(define.variadic_name, "__VA_ARGS__")

    def test_named_variadic_parameters(self) -> None:
        define = parse_define("LOG(fmt, args...) fmt args")
        self.assertEqual(define.parameters, ("fmt", "args"))
        self.assertTrue(define.is_variadic)
        self.assertEqual(define.variadic_name, "args")
        self.assertEqual(define.signature(), "LOG(fmt,args...)")

    def test_invalid_defines(self) -> None:
        for body in ("", "1ABC 1", "F(a, b", "F(a, a) a", "F(..., a) a", "F(a b) a", "F(a,) a"):
            with self.subTest(body=body):
                with self.assertRaises(DefineError):
                    parse_define(body)

    def test_parse_cli_define(self) -> None:
        self.assertEqual(parse_cli_define("FOO").value, "1")
        self.assertEqual(parse_cli_define("FOO=bar baz").value, "bar baz")
        self.assertEqual(parse_cli_define("EMPTY=").value, "")
        function_like = parse_cli_define("ID(x)=x")
        self.assertEqual(function_like.parameters, ("x",))
        self.assertEqual(function_like.value, "x")
        with self.assertRaises(DefineError):
            parse_cli_define("1BAD=2")


class DefineTableTests(unittest.TestCase):
    def test_define_lookup_undef(self) -> None:
        table = DefineTable()
        self.assertIsNone(table.define(parse_define("A 1")))
        self.assertIn("A", table)
        self.assertEqual(table.lookup("A").value, "1")
        self.assertIsNotNone(table.undef("A"))
        self.assertIsNone(table.undef("A"))
        self.assertIsNone(table.lookup("A"))

    def test_identical_redefinition_is_silent(self) -> None:
        table = DefineTable([parse_define("A 1 +  2", filename="x.h", line=1)])
        self.assertIsNone(table.define(parse_define("A 1 + 2", filename="y.h", line=9)))

    def test_conflicting_redefinition_returns_previous(self) -> None:
        table = DefineTable()
        first = parse_define("A 1")
        table.define(first)
        self.assertIs(table.define(parse_define("A 2")), first)
        self.assertEqual(table.lookup("A").value, "2")
        self.assertIsNotNone(table.define(parse_define("A(x) 2")))

    def test_copy_is_independent(self) -> None:
        table = DefineTable([parse_define("A 1")])
        clone = table.copy()
        clone.define(parse_define("B 2"))
        clone.undef("A")
        self.assertEqual(table.names(), ("A",))
        self.assertEqual(clone.names(), ("B",))

    def test_builtins_and_macro_table(self) -> None:
        table = DefineTable(builtin_defines())
        self.assertEqual(len(table), 3)
        self.assertTrue(all(define.kind is MacroKind.BUILTIN for define in table))
        table.define(parse_define("ZED 1"))
        table.define(parse_define("ADD(a,b) a+b"))
        self.assertEqual(macro_table_lines(table), ["ADD(a,b)=a+b", "ZED=1"])

    def test_define_dataclass_tags_kind(self) -> None:
        self.assertIs(Define("F", parameters=("x",)).kind, MacroKind.FUNCTION_LIKE)
        self.assertIs(Define("O").kind, MacroKind.OBJECT_LIKE)


if __name__ == "__main__":
    unittest.main()
