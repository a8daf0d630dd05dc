from __future__ import annotations

import json
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .markers import is_finite_number, load_strict_json

SIDECAR_VERSION = 1
SIDECAR_SOURCE = "marginalia"
SIDECAR_SUFFIX = ".critmeta.json"
DOCUMENT_SUFFIX = ".md"
ANCHOR_TYPES = ("range", "point")
TOKEN_COMMENT_SEPARATOR = "\u241e"

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
# Unicode White_Space without U+0085, plus U+FEFF. Python's \s would also
# take U+001C-U+001F and U+0085 and miss U+FEFF, changing fingerprints.
WHITESPACE_CLASS = "\t\n\x0b\x0c\r \xa0\u1680\u2000-\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
WHITESPACE_RUN_RE = re.compile(f"[{WHITESPACE_CLASS}]+")


def fingerprint(value: str) -> str:
    """32-bit FNV-1a over the UTF-16 code units of value, as 8 hex digits."""
    data = (value or "").encode("utf-16-le", "surrogatepass")
    hash_value = FNV_OFFSET_BASIS
    for idx in range(0, len(data), 2):
        hash_value ^= data[idx] | (data[idx + 1] << 8)
        hash_value = (hash_value * FNV_PRIME) & 0xFFFFFFFF
    return f"{hash_value:08x}"


def normalize_for_match(value: str) -> str:
    return WHITESPACE_RUN_RE.sub(" ", value or "").strip(" ")


def join_token_comments(comments) -> str:
    return TOKEN_COMMENT_SEPARATOR.join(normalize_for_match(value) for value in comments)


def token_block_fingerprint(comments) -> str:
    return fingerprint(join_token_comments(comments))


def annotated_text_fingerprint(annotated_text: str) -> str:
    return fingerprint(normalize_for_match(annotated_text))


@dataclass(frozen=True)
class ParentMeta:
    id: str
    author: str
    ts: int
    resolved: bool
    text: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "author": self.author,
            "ts": self.ts,
            "resolved": self.resolved,
            "text": self.text,
        }


@dataclass(frozen=True)
class ChildMeta:
    id: str
    author: str
    ts: int
    text: str

    def to_dict(self) -> dict:
        return {"id": self.id, "author": self.author, "ts": self.ts, "text": self.text}


@dataclass(frozen=True)
class SidecarRecord:
    thread_id: str
    anchor_type: str
    export_order: int
    token_comments: tuple[str, ...]
    token_block_fingerprint: str
    annotated_text_fingerprint: str
    parent: ParentMeta
    children: tuple[ChildMeta, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "threadId": self.thread_id,
            "anchorType": self.anchor_type,
            "exportOrder": self.export_order,
            "tokenComments": list(self.token_comments),
            "tokenBlockFingerprint": self.token_block_fingerprint,
            "annotatedTextFingerprint": self.annotated_text_fingerprint,
            "parent": self.parent.to_dict(),
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(frozen=True)
class Sidecar:
    generated_at: str
    records: tuple[SidecarRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "v": SIDECAR_VERSION,
            "source": SIDECAR_SOURCE,
            "generatedAt": self.generated_at,
            "records": [record.to_dict() for record in self.records],
        }


def utc_timestamp() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _parse_parent_meta(value):
    if not isinstance(value, dict):
        return None
    if not (
        isinstance(value.get("id"), str)
        and isinstance(value.get("author"), str)
        and is_finite_number(value.get("ts"))
        and isinstance(value.get("resolved"), bool)
        and isinstance(value.get("text"), str)
    ):
        return None
    return ParentMeta(
        id=value["id"],
        author=value["author"],
        ts=int(value["ts"]),
        resolved=value["resolved"],
        text=value["text"],
    )


def _parse_child_meta(value):
    if not isinstance(value, dict):
        return None
    if not (
        isinstance(value.get("id"), str)
        and isinstance(value.get("author"), str)
        and is_finite_number(value.get("ts"))
        and isinstance(value.get("text"), str)
    ):
        return None
    return ChildMeta(id=value["id"], author=value["author"], ts=int(value["ts"]), text=value["text"])


def parse_sidecar_record(value):
    if not isinstance(value, dict):
        return None
    if not isinstance(value.get("threadId"), str):
        return None
    if value.get("anchorType") not in ANCHOR_TYPES:
        return None
    if not is_finite_number(value.get("exportOrder")):
        return None
    token_comments = value.get("tokenComments")
    if not isinstance(token_comments, list) or not all(isinstance(item, str) for item in token_comments):
        return None
    if not isinstance(value.get("tokenBlockFingerprint"), str):
        return None
    if not isinstance(value.get("annotatedTextFingerprint"), str):
        return None
    parent = _parse_parent_meta(value.get("parent"))
    if parent is None:
        return None
    raw_children = value.get("children")
    if not isinstance(raw_children, list):
        return None
    children = []
    for item in raw_children:
        child = _parse_child_meta(item)
        if child is None:
            return None
        children.append(child)
    return SidecarRecord(
        thread_id=value["threadId"],
        anchor_type=value["anchorType"],
        export_order=int(value["exportOrder"]),
        token_comments=tuple(token_comments),
        token_block_fingerprint=value["tokenBlockFingerprint"],
        annotated_text_fingerprint=value["annotatedTextFingerprint"],
        parent=parent,
        children=tuple(children),
    )


def parse_sidecar(value):
    """Validate an already-decoded JSON value as a Sidecar.

    Any malformed record rejects the whole sidecar; the caller then imports
    without metadata.
    """
    if not isinstance(value, dict):
        return None
    version = value.get("v")
    if not is_finite_number(version) or version != SIDECAR_VERSION:
        return None
    if value.get("source") != SIDECAR_SOURCE or not isinstance(value.get("records"), list):
        return None
    records = []
    for item in value["records"]:
        record = parse_sidecar_record(item)
        if record is None:
            return None
        records.append(record)
    generated_at = value.get("generatedAt")
    return Sidecar(
        generated_at=generated_at if isinstance(generated_at, str) else "",
        records=tuple(records),
    )


def sidecar_path_for(document_path: Path) -> Path:
    path = Path(document_path)
    name = path.name
    if name.lower().endswith(DOCUMENT_SUFFIX):
        name = name[: -len(DOCUMENT_SUFFIX)]
    return path.with_name(name + SIDECAR_SUFFIX)


def serialize_sidecar(sidecar: Sidecar) -> str:
    return json.dumps(sidecar.to_dict(), indent=2, ensure_ascii=False) + "\n"


def write_sidecar(path: Path, sidecar: Sidecar):
    Path(path).write_text(serialize_sidecar(sidecar), encoding="utf-8")


def read_sidecar(path: Path):
    path = Path(path)
    if not path.exists():
        return None
    try:
        raw = load_strict_json(path.read_text(encoding="utf-8"))
    except (ValueError, RecursionError):
        print(f"warning: sidecar is not valid JSON, ignored: {path}", file=sys.stderr)
        return None
    sidecar = parse_sidecar(raw)
    if sidecar is None:
        print(f"warning: sidecar ignored due to invalid shape: {path}", file=sys.stderr)
    return sidecar
