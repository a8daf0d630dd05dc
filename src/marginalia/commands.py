from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path

from . import critic, edits, markers
from .sidecar import read_sidecar, sidecar_path_for, write_sidecar

AUTHOR_ENV_VAR = "MARGINALIA_AUTHOR"
EXCERPT_LEN = 48


def _git_config_value(args, cwd=None):
    git_bin = shutil.which("git")
    if git_bin is None:
        return None
    try:
        proc = subprocess.run(
            [git_bin, "config", *args],
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    value = proc.stdout.strip()
    if proc.returncode != 0 or not value:
        return None
    return value


def resolve_author(explicit: str | None = None, cwd: Path | None = None) -> str:
    for candidate in (explicit, os.environ.get(AUTHOR_ENV_VAR)):
        value = str(candidate or "").strip()
        if value:
            return value
    git_name = _git_config_value(["--get", "user.name"], cwd=cwd)
    if git_name:
        return git_name
    git_name = _git_config_value(["--global", "--get", "user.name"], cwd=cwd)
    if git_name:
        return git_name
    return critic.DEFAULT_AUTHOR


def _read_document(path: Path) -> str:
    return Path(path).read_text(encoding="utf-8")


def _write_document(path: Path, text: str):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _excerpt(text: str) -> str:
    flat = " ".join((text or "").split())
    if len(flat) > EXCERPT_LEN:
        flat = flat[: EXCERPT_LEN - 3] + "..."
    return flat


def run_export(input_path: Path, output_path: Path | None = None, sidecar_path: Path | None = None):
    out_path = output_path or input_path
    meta_path = sidecar_path or sidecar_path_for(out_path)
    result = critic.export_to_critic(_read_document(input_path))
    _write_document(out_path, result.text)
    write_sidecar(meta_path, result.sidecar)

    diagnostics = result.diagnostics
    thread_count = diagnostics.exported_range_threads + diagnostics.exported_point_threads
    print(f"Exported {thread_count} thread(s) to CriticMarkup.")
    if diagnostics.malformed_marginalia_pairs > 0:
        print(f"Ignored {diagnostics.malformed_marginalia_pairs} malformed Marginalia pair(s).")
    print(f"Sidecar written: {meta_path}")
    return 0


def run_import(
    input_path: Path,
    output_path: Path | None = None,
    sidecar_path: Path | None = None,
    use_sidecar: bool = True,
):
    sidecar = None
    if use_sidecar:
        sidecar = read_sidecar(sidecar_path or sidecar_path_for(input_path))
    result = critic.import_from_critic(_read_document(input_path), sidecar)
    _write_document(output_path or input_path, result.text)

    diagnostics = result.diagnostics
    thread_count = diagnostics.imported_range_threads + diagnostics.imported_point_threads
    print(f"Imported {thread_count} thread(s) from CriticMarkup.")
    if diagnostics.matched_sidecar_records > 0:
        print(f"Matched {diagnostics.matched_sidecar_records} sidecar record(s).")
    if diagnostics.unmatched_sidecar_records > 0:
        print(f"Unmatched sidecar record(s): {diagnostics.unmatched_sidecar_records}")
    if diagnostics.malformed_critic_tokens > 0:
        print(f"Malformed CriticMarkup token(s) ignored: {diagnostics.malformed_critic_tokens}")
    return 0


def format_thread_line(entry: markers.PositionedThread, doc_text: str) -> str:
    thread = entry.thread
    state = "resolved" if thread.resolved else "active"
    anchor = "(point)" if entry.is_point else f'"{_excerpt(doc_text[entry.annotated_from:entry.annotated_to])}"'
    return f"{thread.id}\t{state}\t{thread.author}\treplies={len(thread.children)}\t{anchor}"


def run_threads(input_path: Path):
    doc_text = _read_document(input_path)
    scanned = markers.scan_comments(doc_text)
    for entry in scanned.threads:
        print(format_thread_line(entry, doc_text))
        for child in entry.thread.children:
            print(f"  {child.id}\t{child.author}\t{_excerpt(child.text)}")
    if scanned.invalid_pairs > 0:
        print(f"{scanned.invalid_pairs} malformed comment pair(s) were ignored.", file=sys.stderr)
    return 0


def collect_document_issues(doc_text: str):
    scanned = markers.scan_comments(doc_text)
    issues = []
    if scanned.invalid_pairs:
        issues.append(f"{scanned.invalid_pairs} malformed comment pair(s).")
    seen = {}
    for entry in scanned.threads:
        for comment_id in [entry.thread.id] + [child.id for child in entry.thread.children]:
            seen[comment_id] = seen.get(comment_id, 0) + 1
    for comment_id, count in sorted(seen.items()):
        if count > 1:
            issues.append(f"Comment id {comment_id} is used {count} times.")
    return issues


def run_check(input_path: Path):
    issues = collect_document_issues(_read_document(input_path))
    if not issues:
        print(f"OK: {input_path}")
        return 0
    print(f"Problems in {input_path}:", file=sys.stderr)
    for issue in issues:
        print(f"- {issue}", file=sys.stderr)
    return 1


def run_add(
    input_path: Path,
    anchor_text: str,
    comment_text: str,
    output_path: Path | None = None,
    author: str | None = None,
):
    doc_text = _read_document(input_path)
    start = doc_text.find(anchor_text) if anchor_text else len(doc_text)
    if start == -1:
        raise ValueError(f"Anchor text not found in {input_path}: {anchor_text!r}")
    new_text, thread = edits.add_thread(
        doc_text,
        start,
        start + len(anchor_text or ""),
        comment_text,
        resolve_author(author, cwd=Path(input_path).parent),
    )
    _write_document(output_path or input_path, new_text)
    print(f"Added comment {thread.id}.")
    return 0


def run_reply(
    input_path: Path,
    thread_id: str,
    comment_text: str,
    output_path: Path | None = None,
    author: str | None = None,
):
    new_text, reply = edits.reply_to_thread(
        _read_document(input_path),
        thread_id,
        comment_text,
        resolve_author(author, cwd=Path(input_path).parent),
    )
    _write_document(output_path or input_path, new_text)
    print(f"Added reply {reply.id} to {thread_id}.")
    return 0


def run_resolve(input_path: Path, thread_id: str, output_path: Path | None = None):
    new_text = edits.toggle_resolved(_read_document(input_path), thread_id)
    _write_document(output_path or input_path, new_text)
    target = edits.find_comment(new_text, thread_id)
    state = "resolved" if target and target.entry.thread.resolved else "active"
    print(f"Comment {thread_id} is now {state}.")
    return 0


def _require_comment_author(doc_text: str, comment_id: str, author: str | None, input_path: Path, action: str):
    target = edits.find_comment(doc_text, comment_id)
    if target is None:
        raise ValueError(f"Comment not found: {comment_id}")
    comment_author = target.reply.author if target.reply is not None else target.entry.thread.author
    current_author = resolve_author(author, cwd=Path(input_path).parent)
    if not edits.can_edit(current_author, comment_author):
        raise ValueError(f"Only the comment author can {action} this comment.")


def run_edit(
    input_path: Path,
    comment_id: str,
    comment_text: str,
    output_path: Path | None = None,
    author: str | None = None,
):
    doc_text = _read_document(input_path)
    _require_comment_author(doc_text, comment_id, author, input_path, "edit")
    new_text = edits.edit_comment(doc_text, comment_id, comment_text)
    _write_document(output_path or input_path, new_text)
    print(f"Edited comment {comment_id}.")
    return 0


def run_delete(
    input_path: Path,
    comment_id: str,
    output_path: Path | None = None,
    author: str | None = None,
):
    doc_text = _read_document(input_path)
    _require_comment_author(doc_text, comment_id, author, input_path, "delete")
    new_text = edits.delete_comment(doc_text, comment_id)
    _write_document(output_path or input_path, new_text)
    print(f"Deleted comment {comment_id}.")
    return 0
