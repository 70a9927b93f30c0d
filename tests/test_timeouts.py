import unittest

from session_replay.timeouts import OPERATION_TIMEOUTS, infer_operation_type, resolve_timeout


class ResolveTimeoutTests(unittest.TestCase):
    def test_operation_table(self) -> None:
        self.assertEqual(
            {"quick": 30.0, "text": 120.0, "code": 300.0, "file": 300.0, "system": 600.0},
            OPERATION_TIMEOUTS,
        )

    def test_explicit_wins(self) -> None:
        self.assertEqual(7.0, resolve_timeout("run bash", explicit=7, operation_type="quick"))

    def test_explicit_zero_disables(self) -> None:
        self.assertEqual(0.0, resolve_timeout("anything", explicit=0))

    def test_operation_type_beats_keywords(self) -> None:
        self.assertEqual(30.0, resolve_timeout("implement a function", operation_type="quick"))

    def test_keyword_heuristics(self) -> None:
        self.assertEqual(30.0, resolve_timeout("Answer yes or no: is water wet?"))
        self.assertEqual(600.0, resolve_timeout("Run the test suite"))
        self.assertEqual(300.0, resolve_timeout("Please read the file config.json"))
        self.assertEqual(300.0, resolve_timeout("Implement a sorting function"))

    def test_quick_hints_are_checked_first(self) -> None:
        self.assertEqual("quick", infer_operation_type("In one word, what does this command do?"))

    def test_session_default_when_nothing_matches(self) -> None:
        self.assertEqual(120.0, resolve_timeout("What is your name?"))
        self.assertEqual(45.0, resolve_timeout("What is your name?", session_default=45))

    def test_keywords_need_word_boundaries(self) -> None:
        self.assertIsNone(infer_operation_type("The runner was barcoded"))

    def test_unknown_operation_type_raises(self) -> None:
        with self.assertRaises(ValueError):
            resolve_timeout("x", operation_type="epic")


if __name__ == "__main__":
    unittest.main()
