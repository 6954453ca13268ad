"""
Metadata codec for storage channel messages.

Directories are stored as text messages and files as attachment captions.
Both carry a fixed, versioned tag prefix followed by space-delimited
``key=value`` fields. This text format is the only durable format the
application owns and must stay stable across releases.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


TAG_PREFIX = "#ocltg #v1"
ROOT_PARENT = "ROOT"

RESERVED_TAGS = frozenset({"ocltg", "v1", "file", "dir"})


class MetaError(Exception):
    """Base exception for metadata decoding errors."""
    pass


class NotRecognized(MetaError):
    """Raised when the text does not carry the expected tag markers."""

    def __init__(self):
        super().__init__("not a storage message")


class MissingField(MetaError):
    """Raised when a required key is absent."""

    def __init__(self, name: str):
        super().__init__(f"missing field: {name}")
        self.name = name


@dataclass(frozen=True)
class DirMeta:
    """Directory record as stored in a text message."""
    dir_id: str
    parent_id: str  # ROOT_PARENT or a directory id
    name: str


@dataclass(frozen=True)
class FileMeta:
    """File record as stored in an attachment caption."""
    dir_id: str
    file_id: str
    name: str
    hash_short: str


def escape_spaces(value: str) -> str:
    """Replace spaces with underscores, doubling literal underscores first."""
    return value.replace("_", "__").replace(" ", "_")


def unescape_spaces(value: str) -> str:
    placeholder = "\x00"
    tmp = value.replace("__", placeholder)
    tmp = tmp.replace("_", " ")
    return tmp.replace(placeholder, "_")


def normalize_name(name: str) -> str:
    """
    Canonical form of a directory or file name before it is published.

    Whitespace runs collapse to one space, a space directly before an
    underscore is dropped, and the ends are trimmed. Names in this form
    survive ``unescape_spaces(escape_spaces(name))`` unchanged.
    """
    collapsed = " ".join((name or "").split())
    return collapsed.replace(" _", "_")


def _kv_map(text: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for token in text.split():
        key, sep, value = token.partition("=")
        if sep:
            result[key] = value
    return result


def _require(fields: Dict[str, str], key: str) -> str:
    if key not in fields:
        raise MissingField(key)
    return fields[key]


def make_dir_message(meta: DirMeta) -> str:
    return f"{TAG_PREFIX} #dir d={meta.dir_id} p={meta.parent_id} name={escape_spaces(meta.name)}"


def make_file_caption(meta: FileMeta) -> str:
    return (
        f"{TAG_PREFIX} #file d={meta.dir_id} f={meta.file_id} "
        f"n={escape_spaces(meta.name)} h={meta.hash_short}"
    )


def make_file_caption_with_tag(meta: FileMeta, dir_name: Optional[str]) -> str:
    """
    Build a file caption with the owning folder appended as a hashtag.

    The hashtag only helps browsing the channel in the messaging client;
    decoding ignores it.
    """
    base = make_file_caption(meta)
    tag = folder_hashtag(dir_name) if dir_name else None
    if tag:
        return f"{base} {tag}"
    return base


def parse_dir_message(text: str) -> DirMeta:
    """
    Decode a directory message.

    Raises:
        NotRecognized: If the tag markers are absent
        MissingField: If a required key is absent
    """
    if "#ocltg" not in text or "#v1" not in text or "#dir" not in text:
        raise NotRecognized()
    fields = _kv_map(text)
    return DirMeta(
        dir_id=_require(fields, "d"),
        parent_id=_require(fields, "p"),
        name=unescape_spaces(_require(fields, "name")),
    )


def parse_file_caption(caption: str) -> FileMeta:
    """
    Decode a file caption.

    Raises:
        NotRecognized: If the tag markers are absent
        MissingField: If a required key is absent
    """
    if "#ocltg" not in caption or "#v1" not in caption or "#file" not in caption:
        raise NotRecognized()
    fields = _kv_map(caption)
    return FileMeta(
        dir_id=_require(fields, "d"),
        file_id=_require(fields, "f"),
        name=unescape_spaces(_require(fields, "n")),
        hash_short=_require(fields, "h"),
    )


def folder_hashtag(name: str) -> Optional[str]:
    """Derive a ``#Folder_Name`` hashtag, or None if nothing usable is left."""
    trimmed = name.strip()
    if not trimmed:
        return None
    out = []
    last_underscore = False
    for ch in trimmed:
        if ch.isalnum():
            out.append(ch)
            last_underscore = False
        elif ch == "_" or ch.isspace() or ch in "-.":
            if not last_underscore:
                out.append("_")
                last_underscore = True
    cleaned = "".join(out).strip("_")
    if not cleaned:
        return None
    return f"#{cleaned}"


def extract_folder_tags(caption: str) -> List[str]:
    """Return the non-reserved hashtags of a caption in order of appearance."""
    tags = []
    i = 0
    length = len(caption)
    while i < length:
        if caption[i] != "#":
            i += 1
            continue
        j = i + 1
        while j < length and (caption[j].isalnum() or caption[j] in "_-"):
            j += 1
        tag = caption[i + 1:j]
        i = j
        if not tag or tag.lower() in RESERVED_TAGS:
            continue
        tags.append(tag)
    return tags


def normalize_tag_name(tag: str) -> Optional[str]:
    """Turn a hashtag body back into a folder name (``My_Docs`` -> ``My Docs``)."""
    mapped = tag.replace("_", " ").replace("-", " ")
    cleaned = " ".join(mapped.split())
    return cleaned or None
