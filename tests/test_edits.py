from __future__ import annotations

import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from marginalia import edits, markers  # noqa: E402
from marginalia.markers import Reply, Thread  # noqa: E402

NOW = 1750000000


class TestThreadEdits(unittest.TestCase):
    def setUp(self) -> None:
        self.thread = Thread(
            id="thread01",
            text="Parent",
            author="Alex",
            ts=1708300000,
            children=(Reply(id="reply001", text="Child", author="Riley", ts=1708300001),),
        )
        self.doc = "Intro " + markers.wrap_with_markers(self.thread, "annotated") + " outro"

    def test_add_thread_wraps_selection(self) -> None:
        doc = "Hello brave new world"
        new_doc, thread = edits.add_thread(doc, 6, 11, "Why brave?", "Dana", now=NOW)
        entry = markers.parse_comments(new_doc)[0]
        self.assertEqual(entry.thread, thread)
        self.assertEqual(new_doc[entry.annotated_from:entry.annotated_to], "brave")
        self.assertEqual(thread.author, "Dana")
        self.assertEqual(thread.ts, NOW)
        self.assertFalse(thread.resolved)
        self.assertRegex(thread.id, r"^[A-Za-z0-9]{8}$")

    def test_add_thread_empty_selection_is_point(self) -> None:
        new_doc, _ = edits.add_thread("abc", 1, 1, "here", "Dana", now=NOW)
        self.assertTrue(markers.parse_comments(new_doc)[0].is_point)

    def test_add_thread_rejects_bad_bounds(self) -> None:
        with self.assertRaises(ValueError):
            edits.add_thread("abc", 2, 1, "x", "a")
        with self.assertRaises(ValueError):
            edits.add_thread("abc", 0, 4, "x", "a")

    def test_find_comment_for_thread_and_reply(self) -> None:
        target = edits.find_comment(self.doc, "thread01")
        self.assertIsNone(target.reply)
        self.assertEqual(target.entry.thread.id, "thread01")
        reply_target = edits.find_comment(self.doc, "reply001")
        self.assertEqual(reply_target.reply.text, "Child")
        self.assertEqual(reply_target.entry.thread.id, "thread01")
        self.assertIsNone(edits.find_comment(self.doc, "missing0"))

    def test_reply_appends_child(self) -> None:
        new_doc, reply = edits.reply_to_thread(self.doc, "thread01", "Another", "Sam", now=NOW)
        thread = markers.parse_comments(new_doc)[0].thread
        self.assertEqual([c.id for c in thread.children], ["reply001", reply.id])
        self.assertEqual(thread.children[-1], reply)
        self.assertNotIn(reply.id, {"thread01", "reply001"})
        self.assertTrue(new_doc.startswith("Intro <!-- marginalia-start: thread01 -->annotated"))

    def test_reply_to_reply_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, "top-level"):
            edits.reply_to_thread(self.doc, "reply001", "nested", "Sam")

    def test_edit_thread_and_reply_text(self) -> None:
        edited = edits.edit_comment(self.doc, "thread01", "Parent v2")
        edited = edits.edit_comment(edited, "reply001", "Child v2")
        thread = markers.parse_comments(edited)[0].thread
        self.assertEqual(thread.text, "Parent v2")
        self.assertEqual(thread.children[0].text, "Child v2")
        self.assertEqual(thread.children[0].author, "Riley")

    def test_toggle_resolved(self) -> None:
        resolved = edits.toggle_resolved(self.doc, "thread01")
        self.assertTrue(markers.parse_comments(resolved)[0].thread.resolved)
        reopened = edits.toggle_resolved(resolved, "thread01")
        self.assertEqual(reopened, self.doc)

    def test_replies_cannot_be_resolved(self) -> None:
        with self.assertRaisesRegex(ValueError, "Replies cannot be resolved"):
            edits.toggle_resolved(self.doc, "reply001")

    def test_delete_reply_keeps_thread(self) -> None:
        new_doc = edits.delete_comment(self.doc, "reply001")
        thread = markers.parse_comments(new_doc)[0].thread
        self.assertEqual(thread.children, ())

    def test_delete_thread_keeps_annotated_text(self) -> None:
        self.assertEqual(edits.delete_comment(self.doc, "thread01"), "Intro annotated outro")

    def test_unknown_id_raises(self) -> None:
        for fn in (edits.toggle_resolved, edits.delete_comment):
            with self.subTest(fn=fn.__name__):
                with self.assertRaises(ValueError):
                    fn(self.doc, "missing0")

    def test_can_edit_normalizes_identity(self) -> None:
        self.assertTrue(edits.can_edit(" alex ", "Alex"))
        self.assertTrue(edits.can_edit("", "Unknown"))
        self.assertFalse(edits.can_edit("Sam", "Alex"))


if __name__ == "__main__":
    unittest.main()
