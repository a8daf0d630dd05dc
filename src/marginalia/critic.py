"""CriticMarkup interop for marker-embedded comment threads.

Export turns every marker pair into a highlight token followed by one comment
token per thread entry (point threads get only the comment tokens) and
records a sidecar entry per thread. Import scans the token text left to
right and rebuilds marker pairs, using the sidecar to restore ids, authors,
timestamps and resolution state that CriticMarkup cannot carry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .markers import (
    Reply,
    Thread,
    collect_comment_ids,
    scan_comments,
    take_comment_id,
    wrap_with_markers,
)
from .sidecar import (
    ChildMeta,
    ParentMeta,
    Sidecar,
    SidecarRecord,
    WHITESPACE_RUN_RE,
    annotated_text_fingerprint,
    token_block_fingerprint,
    utc_timestamp,
)

HIGHLIGHT_OPEN = "{=="
HIGHLIGHT_CLOSE = "==}"
COMMENT_OPEN = "{>>"
COMMENT_CLOSE = "<<}"
DEFAULT_AUTHOR = "Unknown"

TOKEN_NONE = "none"
TOKEN_MALFORMED = "malformed"
TOKEN_OK = "token"


@dataclass(frozen=True)
class TokenScan:
    kind: str
    content: str = ""
    end: int = 0


@dataclass(frozen=True)
class CommentRun:
    comments: list[str]
    end: int


@dataclass(frozen=True)
class ExportDiagnostics:
    malformed_marginalia_pairs: int = 0
    exported_range_threads: int = 0
    exported_point_threads: int = 0

    def to_dict(self) -> dict:
        return {
            "malformed_marginalia_pairs": self.malformed_marginalia_pairs,
            "exported_range_threads": self.exported_range_threads,
            "exported_point_threads": self.exported_point_threads,
        }


@dataclass(frozen=True)
class ImportDiagnostics:
    malformed_critic_tokens: int = 0
    imported_range_threads: int = 0
    imported_point_threads: int = 0
    matched_sidecar_records: int = 0
    unmatched_sidecar_records: int = 0

    def to_dict(self) -> dict:
        return {
            "malformed_critic_tokens": self.malformed_critic_tokens,
            "imported_range_threads": self.imported_range_threads,
            "imported_point_threads": self.imported_point_threads,
            "matched_sidecar_records": self.matched_sidecar_records,
            "unmatched_sidecar_records": self.unmatched_sidecar_records,
        }


@dataclass(frozen=True)
class ExportResult:
    text: str
    sidecar: Sidecar
    diagnostics: ExportDiagnostics


@dataclass(frozen=True)
class ImportResult:
    text: str
    diagnostics: ImportDiagnostics


def encode_token_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(HIGHLIGHT_CLOSE, "\\" + HIGHLIGHT_CLOSE)
        .replace(COMMENT_CLOSE, "\\" + COMMENT_CLOSE)
    )


def decode_token_text(value: str) -> str:
    # Inverse order of encode_token_text; the backslash pass must run last.
    return (
        value.replace("\\" + COMMENT_CLOSE, COMMENT_CLOSE)
        .replace("\\" + HIGHLIGHT_CLOSE, HIGHLIGHT_CLOSE)
        .replace("\\\\", "\\")
    )


def encode_highlight(text: str) -> str:
    return f"{HIGHLIGHT_OPEN}{encode_token_text(text)}{HIGHLIGHT_CLOSE}"


def encode_comment_token(text: str) -> str:
    return f"{COMMENT_OPEN}{encode_token_text(text)}{COMMENT_CLOSE}"


def _find_unescaped(text: str, needle: str, start: int) -> int:
    idx = text.find(needle, start)
    while idx != -1:
        backslashes = 0
        probe = idx - 1
        while probe >= start and text[probe] == "\\":
            backslashes += 1
            probe -= 1
        if backslashes % 2 == 0:
            return idx
        idx = text.find(needle, idx + 1)
    return -1


def scan_token_at(text: str, index: int, open_delim: str, close_delim: str) -> TokenScan:
    if not text.startswith(open_delim, index):
        return TokenScan(TOKEN_NONE)
    content_start = index + len(open_delim)
    close_idx = _find_unescaped(text, close_delim, content_start)
    if close_idx == -1:
        return TokenScan(TOKEN_MALFORMED)
    return TokenScan(TOKEN_OK, content=text[content_start:close_idx], end=close_idx + len(close_delim))


def scan_highlight_at(text: str, index: int) -> TokenScan:
    return scan_token_at(text, index, HIGHLIGHT_OPEN, HIGHLIGHT_CLOSE)


def scan_comment_at(text: str, index: int) -> TokenScan:
    return scan_token_at(text, index, COMMENT_OPEN, COMMENT_CLOSE)


def skip_whitespace(text: str, start: int) -> int:
    match = WHITESPACE_RUN_RE.match(text, start)
    return match.end() if match else start


def scan_attached_comments(text: str, start: int) -> CommentRun:
    """Comment tokens following a highlight, whitespace allowed before each.

    A trailing malformed comment token ends the run; it is left in place for
    the main scan to count.
    """
    comments = []
    end = start
    cursor = start
    while cursor < len(text):
        token = scan_comment_at(text, skip_whitespace(text, cursor))
        if token.kind != TOKEN_OK:
            break
        comments.append(token.content)
        end = token.end
        cursor = token.end
    return CommentRun(comments=comments, end=end)


def scan_standalone_comments(text: str, start: int) -> CommentRun:
    comments = []
    end = start
    cursor = start
    while cursor < len(text):
        token = scan_comment_at(text, cursor)
        if token.kind != TOKEN_OK:
            break
        comments.append(token.content)
        end = token.end
        cursor = skip_whitespace(text, end)
    return CommentRun(comments=comments, end=end)


def build_sidecar_record(thread: Thread, annotated_text: str, token_comments, export_order: int) -> SidecarRecord:
    return SidecarRecord(
        thread_id=thread.id,
        anchor_type="range" if annotated_text else "point",
        export_order=export_order,
        token_comments=tuple(token_comments),
        token_block_fingerprint=token_block_fingerprint(token_comments),
        annotated_text_fingerprint=annotated_text_fingerprint(annotated_text),
        parent=ParentMeta(
            id=thread.id,
            author=thread.author,
            ts=thread.ts,
            resolved=thread.resolved,
            text=thread.text,
        ),
        children=tuple(
            ChildMeta(id=child.id, author=child.author, ts=child.ts, text=child.text)
            for child in thread.children
        ),
    )


def export_to_critic(doc_text: str, generated_at=None) -> ExportResult:
    scanned = scan_comments(doc_text)
    entries = sorted(scanned.threads, key=lambda entry: entry.start_marker_from)
    output = []
    records = []
    cursor = 0
    range_threads = 0
    point_threads = 0

    for export_order, entry in enumerate(entries):
        output.append(doc_text[cursor:entry.start_marker_from])
        annotated_text = doc_text[entry.annotated_from:entry.annotated_to]
        token_comments = [entry.thread.text] + [child.text for child in entry.thread.children]
        token_block = "".join(encode_comment_token(value) for value in token_comments)
        if annotated_text:
            output.append(encode_highlight(annotated_text) + token_block)
            range_threads += 1
        else:
            output.append(token_block)
            point_threads += 1
        records.append(build_sidecar_record(entry.thread, annotated_text, token_comments, export_order))
        cursor = entry.end_marker_to

    output.append(doc_text[cursor:])
    return ExportResult(
        text="".join(output),
        sidecar=Sidecar(generated_at=generated_at or utc_timestamp(), records=tuple(records)),
        diagnostics=ExportDiagnostics(
            malformed_marginalia_pairs=scanned.invalid_pairs,
            exported_range_threads=range_threads,
            exported_point_threads=point_threads,
        ),
    )


class SidecarMatcher:
    """Tracks which sidecar records have been claimed during one import."""

    def __init__(self, sidecar=None):
        self.records = list(sidecar.records) if sidecar is not None else []
        self.used_indexes = set()

    def find(self, anchor_type: str, order: int, token_comments, annotated_text: str = ""):
        if not self.records:
            return None
        token_fp = token_block_fingerprint(token_comments)
        annotated_fp = annotated_text_fingerprint(annotated_text)

        def eligible(record: SidecarRecord) -> bool:
            if record.anchor_type != anchor_type:
                return False
            if record.token_block_fingerprint != token_fp:
                return False
            if anchor_type == "range" and record.annotated_text_fingerprint != annotated_fp:
                return False
            return True

        free = [(idx, record) for idx, record in enumerate(self.records) if idx not in self.used_indexes]
        for idx, record in free:
            if record.export_order == order and eligible(record):
                return idx
        for idx, record in free:
            if eligible(record):
                return idx
        return None

    def claim(self, index):
        if index is None:
            return None
        self.used_indexes.add(index)
        return self.records[index]

    @property
    def matched(self) -> int:
        return len(self.used_indexes)

    @property
    def unmatched(self) -> int:
        return len(self.records) - len(self.used_indexes)


def build_imported_thread(token_comments, record, used_ids: set, now: int) -> Thread:
    parent_text = token_comments[0] if token_comments else ""
    if record is not None:
        thread_id = take_comment_id(record.parent.id or record.thread_id, used_ids)
        author, ts, resolved = record.parent.author, record.parent.ts, record.parent.resolved
    else:
        thread_id = take_comment_id(None, used_ids)
        author, ts, resolved = DEFAULT_AUTHOR, now, False

    children = []
    for idx, text in enumerate(token_comments[1:]):
        meta = record.children[idx] if record is not None and idx < len(record.children) else None
        children.append(
            Reply(
                id=take_comment_id(meta.id if meta else None, used_ids),
                text=text,
                author=meta.author if meta else DEFAULT_AUTHOR,
                ts=meta.ts if meta else now,
            )
        )
    return Thread(
        id=thread_id,
        text=parent_text,
        author=author,
        ts=ts,
        resolved=resolved,
        children=tuple(children),
    )


@dataclass
class _ImportState:
    matcher: SidecarMatcher
    used_ids: set
    now: int
    order: int = 0
    output: list = field(default_factory=list)


def _import_range(state: _ImportState, highlight_text: str, comments) -> None:
    record = state.matcher.claim(
        state.matcher.find("range", state.order, comments, annotated_text=highlight_text)
    )
    thread = build_imported_thread(comments, record, state.used_ids, state.now)
    state.output.append(wrap_with_markers(thread, highlight_text))
    state.order += 1


def _import_point_run(state: _ImportState, comments) -> int:
    """Split a standalone comment run into threads, longest sidecar match first."""
    produced = 0
    offset = 0
    while offset < len(comments):
        chosen_length = 1
        chosen_index = None
        for length in range(len(comments) - offset, 0, -1):
            found = state.matcher.find("point", state.order, comments[offset:offset + length])
            if found is not None:
                chosen_length = length
                chosen_index = found
                break
        record = state.matcher.claim(chosen_index)
        thread = build_imported_thread(comments[offset:offset + chosen_length], record, state.used_ids, state.now)
        state.output.append(wrap_with_markers(thread))
        offset += chosen_length
        state.order += 1
        produced += 1
    return produced


def import_from_critic(doc_text: str, sidecar=None, now=None) -> ImportResult:
    state = _ImportState(
        matcher=SidecarMatcher(sidecar),
        used_ids=collect_comment_ids(doc_text),
        now=int(time.time()) if now is None else int(now),
    )
    malformed = 0
    range_threads = 0
    point_threads = 0
    cursor = 0
    i = 0

    while i < len(doc_text):
        highlight = scan_highlight_at(doc_text, i)
        if highlight.kind == TOKEN_MALFORMED:
            malformed += 1
            i += 1
            continue
        if highlight.kind == TOKEN_OK:
            attached = scan_attached_comments(doc_text, highlight.end)
            if not attached.comments:
                # Plain highlight without comments stays CriticMarkup.
                i = highlight.end
                continue
            state.output.append(doc_text[cursor:i])
            _import_range(
                state,
                decode_token_text(highlight.content),
                [decode_token_text(value) for value in attached.comments],
            )
            range_threads += 1
            cursor = i = attached.end
            continue

        comment = scan_comment_at(doc_text, i)
        if comment.kind == TOKEN_MALFORMED:
            malformed += 1
            i += 1
            continue
        if comment.kind == TOKEN_OK:
            run = scan_standalone_comments(doc_text, i)
            state.output.append(doc_text[cursor:i])
            point_threads += _import_point_run(state, [decode_token_text(value) for value in run.comments])
            cursor = i = run.end
            continue

        i += 1

    state.output.append(doc_text[cursor:])
    return ImportResult(
        text="".join(state.output),
        diagnostics=ImportDiagnostics(
            malformed_critic_tokens=malformed,
            imported_range_threads=range_threads,
            imported_point_threads=point_threads,
            matched_sidecar_records=state.matcher.matched,
            unmatched_sidecar_records=state.matcher.unmatched,
        ),
    )
