from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = REPO_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from marginalia import critic, markers  # noqa: E402
from marginalia.markers import Reply, Thread  # noqa: E402
from marginalia.sidecar import parse_sidecar  # noqa: E402
from tests.helpers.diagnostics import write_failure_bundle  # noqa: E402
from tests.helpers.marker_inspector import inspect_marker_document  # noqa: E402


def T(comment_id, text, author="A", ts=1767225600, resolved=False, children=()):
    return Thread(id=comment_id, text=text, author=author, ts=ts, resolved=resolved, children=tuple(children))


def R(comment_id, text, author="B", ts=1767225660):
    return Reply(id=comment_id, text=text, author=author, ts=ts)


EDGE_CASES = [
    {
        "name": "heading_and_paragraph_ranges",
        "markdown": (
            "# " + markers.wrap_with_markers(T("c1", "Title note"), "Heading") + "\n\n"
            "Plain paragraph with " + markers.wrap_with_markers(T("c2", "Another", author="B"), "a span") + ".\n"
        ),
    },
    {
        "name": "multi_reply_range",
        "markdown": (
            "Paragraph with "
            + markers.wrap_with_markers(
                T("root10", "root note", children=[R("r11", "first child"), R("r12", "second child", author="C")]),
                "annotated words",
            )
            + " end.\n"
        ),
    },
    {
        "name": "resolved_and_active_mix",
        "markdown": (
            markers.wrap_with_markers(T("res70", "done", resolved=True), "resolved span")
            + " and "
            + markers.wrap_with_markers(T("act71", "open"), "active span")
            + "\n"
        ),
    },
    {
        "name": "point_threads_back_to_back",
        "markdown": (
            "Before"
            + markers.wrap_with_markers(T("p1", "first point", children=[R("p1r", "reply")]))
            + markers.wrap_with_markers(T("p2", "second point"))
            + markers.wrap_with_markers(T("p3", "third point", children=[R("p3a", "x"), R("p3b", "y")]))
            + " after\n"
        ),
    },
    {
        "name": "delimiters_inside_text",
        "markdown": (
            markers.wrap_with_markers(
                T("esc1", "uses --> and <<} and ==} and \\", children=[R("esc2", "back\\slash <<}")]),
                "span with ==} inside",
            )
            + "\n"
        ),
    },
    {
        "name": "identical_threads",
        "markdown": (
            markers.wrap_with_markers(T("dup1", "same", author="First"), "same text")
            + " / "
            + markers.wrap_with_markers(T("dup2", "same", author="Second"), "same text")
            + " / "
            + markers.wrap_with_markers(T("dup3", "same", author="Third"))
            + markers.wrap_with_markers(T("dup4", "same", author="Fourth"))
            + "\n"
        ),
    },
    {
        "name": "multiline_annotated_range",
        "markdown": (
            "- item\n- "
            + markers.wrap_with_markers(T("ml1", "spans lines\nwith newline", children=[R("ml2", "ok")]), "two\nlines")
            + "\n"
        ),
    },
]


class TestEdgeRoundtrips(unittest.TestCase):
    maxDiff = None

    def test_marker_seed_roundtrip_stability(self) -> None:
        for case in EDGE_CASES:
            with self.subTest(case=case["name"]):
                self._run_case(case)

    def _run_case(self, case: dict) -> None:
        source = case["markdown"]
        exported = critic.export_to_critic(source)
        # The sidecar goes through JSON like it does on disk.
        sidecar = parse_sidecar(json.loads(json.dumps(exported.sidecar.to_dict())))
        imported = critic.import_from_critic(exported.text, sidecar)

        source_snapshot = inspect_marker_document(source)
        critic_snapshot = inspect_marker_document(exported.text)
        roundtrip_snapshot = inspect_marker_document(imported.text)

        errors: list[str] = []
        if sidecar is None:
            errors.append("Exported sidecar failed validation.")
        if critic_snapshot.start_ids_order:
            errors.append(f"CriticMarkup output still has markers: {critic_snapshot.start_ids_order}")

        expected_tokens = sum(1 + len(t.child_ids) for t in source_snapshot.threads)
        if critic_snapshot.comment_token_count != expected_tokens:
            errors.append(
                f"Expected {expected_tokens} comment tokens, found {critic_snapshot.comment_token_count}."
            )

        source_ids = [t.id for t in source_snapshot.threads]
        roundtrip_ids = [t.id for t in roundtrip_snapshot.threads]
        if roundtrip_ids != source_ids:
            errors.append(f"Thread id order drift. expected={source_ids} actual={roundtrip_ids}")

        for thread in source_snapshot.threads:
            other = roundtrip_snapshot.by_id.get(thread.id)
            if other is None:
                continue
            for field_name in ("text", "author", "ts", "resolved", "annotated_text", "child_ids", "child_authors", "child_texts"):
                if getattr(thread, field_name) != getattr(other, field_name):
                    errors.append(
                        f"{field_name} drift for id={thread.id}. "
                        f"expected={getattr(thread, field_name)!r} actual={getattr(other, field_name)!r}"
                    )

        if imported.text != source:
            errors.append("Roundtrip document text differs from source.")

        diagnostics = imported.diagnostics
        if diagnostics.unmatched_sidecar_records or diagnostics.malformed_critic_tokens:
            errors.append(f"Unexpected import diagnostics: {diagnostics.to_dict()}")

        if errors:
            case_dir = Path(tempfile.mkdtemp(prefix=f"edge-{case['name']}-"))
            failure_bundle = write_failure_bundle(
                case_dir / "failure_bundle",
                source_text=source,
                critic_text=exported.text,
                roundtrip_text=imported.text,
                sidecar=exported.sidecar,
                source_snapshot=source_snapshot,
                roundtrip_snapshot=roundtrip_snapshot,
                errors=errors,
            )
            self.fail(
                f"Edge case failed: {case['name']}. Diagnostics: {failure_bundle}\n- " + "\n- ".join(errors)
            )


if __name__ == "__main__":
    unittest.main()
