from __future__ import annotations

import json
import math
import random
import re
import secrets
from dataclasses import dataclass, field

PAYLOAD_VERSION = 1

COMMENT_PAIR_RE = re.compile(
    r"(?P<start><!--\s*marginalia-start:\s*(?P<start_id>[a-zA-Z0-9_-]+)\s*-->)"
    r"(?P<annotated>.*?)"
    r"(?P<end><!--\s*marginalia:\s*(?P<payload>.*?)\s*-->)",
    re.DOTALL,
)
COMMENT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
RANDOM_CHARS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
COMMENT_ID_LENGTH = 8
MAX_ID_ATTEMPTS = 10_000


@dataclass(frozen=True)
class Reply:
    id: str
    text: str
    author: str
    ts: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "ts": self.ts,
        }


@dataclass(frozen=True)
class Thread:
    id: str
    text: str
    author: str
    ts: int
    resolved: bool = False
    children: tuple[Reply, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "v": PAYLOAD_VERSION,
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "ts": self.ts,
            "resolved": self.resolved,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(frozen=True)
class PositionedThread:
    thread: Thread
    start_marker_from: int
    start_marker_to: int
    annotated_from: int
    annotated_to: int
    end_marker_from: int
    end_marker_to: int

    @property
    def is_point(self) -> bool:
        return self.annotated_from == self.annotated_to


@dataclass(frozen=True)
class ScanResult:
    threads: list[PositionedThread]
    invalid_pairs: int


def is_valid_comment_id(value) -> bool:
    return isinstance(value, str) and bool(COMMENT_ID_RE.match(value))


def is_finite_number(value) -> bool:
    # bool is an int subclass but never a valid JSON number here.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _parse_reply(item):
    if not isinstance(item, dict):
        return None
    if not is_valid_comment_id(item.get("id")):
        return None
    if not isinstance(item.get("text"), str) or not isinstance(item.get("author"), str):
        return None
    if not is_finite_number(item.get("ts")):
        return None
    return Reply(id=item["id"], text=item["text"], author=item["author"], ts=int(item["ts"]))


def _parse_replies(value):
    if value is None:
        return ()
    if not isinstance(value, list):
        return None
    replies = []
    for item in value:
        reply = _parse_reply(item)
        if reply is None:
            return None
        replies.append(reply)
    return tuple(replies)


def validate_thread_payload(candidate, start_id: str):
    """Validate a decoded payload against the id declared by its start marker.

    Returns a Thread, or None when any part of the payload is malformed. A
    single bad reply rejects the whole thread.
    """
    if not isinstance(candidate, dict):
        return None
    version = candidate.get("v")
    if not is_finite_number(version) or version != PAYLOAD_VERSION:
        return None
    comment_id = candidate.get("id")
    if not is_valid_comment_id(comment_id) or comment_id != start_id:
        return None
    if not isinstance(candidate.get("text"), str) or not isinstance(candidate.get("author"), str):
        return None
    if not is_finite_number(candidate.get("ts")):
        return None
    if not isinstance(candidate.get("resolved"), bool):
        return None
    if "children" in candidate and candidate["children"] is None:
        return None
    children = _parse_replies(candidate.get("children"))
    if children is None:
        return None
    return Thread(
        id=comment_id,
        text=candidate["text"],
        author=candidate["author"],
        ts=int(candidate["ts"]),
        resolved=candidate["resolved"],
        children=children,
    )


def _reject_constant(name: str):
    raise ValueError(f"non-JSON literal {name}")


def load_strict_json(raw: str):
    """json.loads without the NaN and Infinity extensions."""
    return json.loads(raw, parse_constant=_reject_constant)


def decode_thread_payload(raw_payload: str, start_id: str):
    # ValueError also covers oversized integer literals.
    try:
        parsed = load_strict_json(raw_payload)
    except (ValueError, RecursionError):
        return None
    return validate_thread_payload(parsed, start_id)


def encode_thread_payload(thread: Thread) -> str:
    payload = json.dumps(thread.to_dict(), ensure_ascii=False, separators=(",", ":"))
    return payload.replace("-->", "--\\u003e")


def build_start_marker(comment_id: str) -> str:
    return f"<!-- marginalia-start: {comment_id} -->"


def build_end_marker(thread: Thread) -> str:
    return f"<!-- marginalia: {encode_thread_payload(thread)} -->"


def build_comment_markers(thread: Thread):
    return build_start_marker(thread.id), build_end_marker(thread)


def wrap_with_markers(thread: Thread, annotated_text: str = "") -> str:
    start_marker, end_marker = build_comment_markers(thread)
    return f"{start_marker}{annotated_text}{end_marker}"


def scan_comments(doc_text: str) -> ScanResult:
    threads = []
    invalid_pairs = 0
    for match in COMMENT_PAIR_RE.finditer(doc_text or ""):
        thread = decode_thread_payload(match.group("payload"), match.group("start_id"))
        if thread is None:
            invalid_pairs += 1
            continue
        threads.append(
            PositionedThread(
                thread=thread,
                start_marker_from=match.start("start"),
                start_marker_to=match.end("start"),
                annotated_from=match.start("annotated"),
                annotated_to=match.end("annotated"),
                end_marker_from=match.start("end"),
                end_marker_to=match.end("end"),
            )
        )
    # Reading order, even when markers were moved around by hand.
    threads.sort(key=lambda entry: entry.annotated_from)
    return ScanResult(threads=threads, invalid_pairs=invalid_pairs)


def parse_comments(doc_text: str) -> list[PositionedThread]:
    return scan_comments(doc_text).threads


def collect_comment_ids(doc_text: str) -> set[str]:
    ids = set()
    for entry in scan_comments(doc_text).threads:
        ids.add(entry.thread.id)
        for child in entry.thread.children:
            ids.add(child.id)
    return ids


def _random_comment_id() -> str:
    try:
        return "".join(secrets.choice(RANDOM_CHARS) for _ in range(COMMENT_ID_LENGTH))
    except NotImplementedError:
        # No OS entropy source on this platform.
        return "".join(random.choice(RANDOM_CHARS) for _ in range(COMMENT_ID_LENGTH))


def generate_comment_id(used_ids=None) -> str:
    used = used_ids or ()
    for _ in range(MAX_ID_ATTEMPTS):
        candidate = _random_comment_id()
        if candidate not in used:
            return candidate
    raise RuntimeError(f"could not generate an unused comment id after {MAX_ID_ATTEMPTS} attempts")


def take_comment_id(preferred_id, used_ids: set) -> str:
    """Claim preferred_id if it is valid and free, otherwise a fresh id."""
    if preferred_id and is_valid_comment_id(preferred_id) and preferred_id not in used_ids:
        used_ids.add(preferred_id)
        return preferred_id
    comment_id = generate_comment_id(used_ids)
    used_ids.add(comment_id)
    return comment_id
