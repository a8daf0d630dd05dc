from __future__ import annotations

import difflib
import json
from dataclasses import asdict, is_dataclass
from pathlib import Path


def _to_jsonable(value):
    if hasattr(value, "to_dict") and callable(value.to_dict):
        return value.to_dict()
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


def _write_json(path: Path, value) -> None:
    path.write_text(json.dumps(_to_jsonable(value), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def text_diff(expected: str, actual: str, label: str, max_lines: int = 60) -> str:
    expected_lines = (expected or "").splitlines()
    actual_lines = (actual or "").splitlines()
    lines = list(
        difflib.unified_diff(
            expected_lines,
            actual_lines,
            fromfile=f"{label}:expected",
            tofile=f"{label}:actual",
            lineterm="",
        )
    )
    if len(lines) > max_lines:
        lines = lines[:max_lines] + ["... diff truncated ..."]
    return "\n".join(lines)


def write_failure_bundle(
    bundle_dir: Path,
    *,
    source_text: str,
    critic_text: str,
    roundtrip_text: str,
    sidecar,
    source_snapshot,
    roundtrip_snapshot,
    errors: list[str],
) -> Path:
    bundle_dir = Path(bundle_dir)
    bundle_dir.mkdir(parents=True, exist_ok=True)

    (bundle_dir / "source.md").write_text(source_text, encoding="utf-8")
    (bundle_dir / "critic.md").write_text(critic_text, encoding="utf-8")
    (bundle_dir / "roundtrip.md").write_text(roundtrip_text, encoding="utf-8")
    _write_json(bundle_dir / "sidecar.json", sidecar)
    _write_json(bundle_dir / "source_snapshot.json", source_snapshot)
    _write_json(bundle_dir / "roundtrip_snapshot.json", roundtrip_snapshot)

    report_lines = []
    report_lines.append("Roundtrip comment/thread verification failed.")
    report_lines.append("")
    report_lines.append("Errors:")
    for idx, error in enumerate(errors, start=1):
        report_lines.append(f"{idx}. {error}")

    diff = text_diff(source_text, roundtrip_text, "document")
    if diff:
        report_lines.append("")
        report_lines.append("Document diff:")
        report_lines.append(diff)

    report_lines.append("")
    report_lines.append("Artifacts:")
    report_lines.append("- source.md")
    report_lines.append("- critic.md")
    report_lines.append("- roundtrip.md")
    report_lines.append("- sidecar.json")
    report_lines.append("- source_snapshot.json")
    report_lines.append("- roundtrip_snapshot.json")

    (bundle_dir / "mismatch_report.txt").write_text("\n".join(report_lines) + "\n", encoding="utf-8")
    return bundle_dir
