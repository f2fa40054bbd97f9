import unittest

from feedsync.sanitize import sanitize_description


class SanitizeTests(unittest.TestCase):
    def test_email_addresses_are_replaced(self) -> None:
        text = "Contact guest at jane.doe@example.com for late arrival"
        self.assertEqual(
            sanitize_description(text),
            "Contact guest at [email removed] for late arrival",
        )

    def test_email_lines_are_removed(self) -> None:
        text = "Guest: Jane\nEmail: jane@example.com\nAdults: 2"
        result = sanitize_description(text)
        self.assertNotIn("Email", result)
        self.assertNotIn("jane@example.com", result)
        self.assertIn("Guest: Jane", result)
        self.assertIn("Adults: 2", result)

    def test_blank_line_runs_collapse_and_trim(self) -> None:
        text = "\n\nFirst\n\n\n\nSecond\n\n"
        self.assertEqual(sanitize_description(text), "First\n\nSecond")

    def test_empty_values(self) -> None:
        self.assertEqual(sanitize_description(None), "")
        self.assertEqual(sanitize_description(""), "")


if __name__ == "__main__":
    unittest.main()
