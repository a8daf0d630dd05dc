from __future__ import annotations

import time
from dataclasses import dataclass, replace

from .markers import (
    PositionedThread,
    Reply,
    Thread,
    build_end_marker,
    collect_comment_ids,
    generate_comment_id,
    scan_comments,
    wrap_with_markers,
)


@dataclass(frozen=True)
class CommentTarget:
    entry: PositionedThread
    reply: Reply | None = None


def _now(now) -> int:
    return int(time.time()) if now is None else int(now)


def find_comment(doc_text: str, comment_id: str):
    for entry in scan_comments(doc_text).threads:
        if entry.thread.id == comment_id:
            return CommentTarget(entry=entry)
        for child in entry.thread.children:
            if child.id == comment_id:
                return CommentTarget(entry=entry, reply=child)
    return None


def _require_comment(doc_text: str, comment_id: str) -> CommentTarget:
    target = find_comment(doc_text, comment_id)
    if target is None:
        raise ValueError(f"Comment not found: {comment_id}")
    return target


def _replace_end_marker(doc_text: str, entry: PositionedThread, thread: Thread) -> str:
    return doc_text[:entry.end_marker_from] + build_end_marker(thread) + doc_text[entry.end_marker_to:]


def add_thread(doc_text: str, start: int, end: int, text: str, author: str, now=None):
    if not 0 <= start <= end <= len(doc_text):
        raise ValueError(f"Selection {start}:{end} is outside the document (length {len(doc_text)}).")
    thread = Thread(
        id=generate_comment_id(collect_comment_ids(doc_text)),
        text=text,
        author=author,
        ts=_now(now),
        resolved=False,
    )
    new_text = doc_text[:start] + wrap_with_markers(thread, doc_text[start:end]) + doc_text[end:]
    return new_text, thread


def reply_to_thread(doc_text: str, thread_id: str, text: str, author: str, now=None):
    target = _require_comment(doc_text, thread_id)
    if target.reply is not None:
        raise ValueError("Replies can only be added to top-level comments.")
    reply = Reply(
        id=generate_comment_id(collect_comment_ids(doc_text)),
        text=text,
        author=author,
        ts=_now(now),
    )
    thread = target.entry.thread
    updated = replace(thread, children=thread.children + (reply,))
    return _replace_end_marker(doc_text, target.entry, updated), reply


def edit_comment(doc_text: str, comment_id: str, text: str) -> str:
    target = _require_comment(doc_text, comment_id)
    thread = target.entry.thread
    if target.reply is None:
        updated = replace(thread, text=text)
    else:
        updated = replace(
            thread,
            children=tuple(
                replace(child, text=text) if child.id == comment_id else child for child in thread.children
            ),
        )
    return _replace_end_marker(doc_text, target.entry, updated)


def toggle_resolved(doc_text: str, thread_id: str) -> str:
    target = _require_comment(doc_text, thread_id)
    if target.reply is not None:
        raise ValueError("Replies cannot be resolved.")
    thread = target.entry.thread
    return _replace_end_marker(doc_text, target.entry, replace(thread, resolved=not thread.resolved))


def delete_comment(doc_text: str, comment_id: str) -> str:
    target = _require_comment(doc_text, comment_id)
    entry = target.entry
    if target.reply is not None:
        thread = entry.thread
        updated = replace(thread, children=tuple(child for child in thread.children if child.id != comment_id))
        return _replace_end_marker(doc_text, entry, updated)
    # Drop both markers, keep the annotated text.
    return (
        doc_text[:entry.start_marker_from]
        + doc_text[entry.annotated_from:entry.annotated_to]
        + doc_text[entry.end_marker_to:]
    )


def normalize_author_identity(author: str) -> str:
    normalized = (author or "").strip()
    return normalized.lower() if normalized else "unknown"


def can_edit(current_author: str, comment_author: str) -> bool:
    return normalize_author_identity(current_author) == normalize_author_identity(comment_author)
