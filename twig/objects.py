import itertools
import operator
import re
import time

from . import types
from .errors import Corrupt
from .types import Commit, Signature, Tag, TreeEntry

_SIGNATURE_RE = re.compile(r'^(?P<name>.*) <(?P<email>[^<>]*)> (?P<timestamp>-?\d+) (?P<offset>[+-]\d{4})$')


def make_signature(name: str, email: str, timestamp: int | None = None) -> Signature:
    if timestamp is None:
        timestamp = int(time.time())
    offset_minutes = -(time.altzone if time.daylight and time.localtime(timestamp).tm_isdst else time.timezone) // 60
    sign = '+' if offset_minutes >= 0 else '-'
    hours, minutes = divmod(abs(offset_minutes), 60)
    return Signature(name, email, timestamp, f'{sign}{hours:02d}{minutes:02d}')


def format_signature(sig: Signature) -> str:
    for value in (sig.name, sig.email):
        if any(c in value for c in '<>\n'):
            raise ValueError(f'invalid character in identity {value!r}')
    return f'{sig.name} <{sig.email}> {sig.timestamp} {sig.offset}'


def parse_signature(value: str) -> Signature:
    match = _SIGNATURE_RE.match(value)
    if not match:
        raise Corrupt(f'malformed identity line {value!r}')
    return Signature(match['name'], match['email'], int(match['timestamp']), match['offset'])


def check_entry_name(name: str) -> None:
    if not name or name in ('.', '..') or any(c in name for c in '/\0\n'):
        raise ValueError(f'invalid tree entry name {name!r}')


def serialize_tree(entries: list[TreeEntry]) -> bytes:
    seen = set()
    for entry in entries:
        check_entry_name(entry.name)
        if entry.name in seen:
            raise ValueError(f'duplicate tree entry {entry.name!r}')
        seen.add(entry.name)
        if types.KIND_BY_MODE.get(entry.mode) != entry.kind:
            raise ValueError(f'mode {entry.mode} does not match kind {entry.kind} for {entry.name!r}')

    tree = ''.join(f'{mode} {kind} {oid} {name}\n'
                   for name, mode, oid, kind
                   in sorted(entries, key=operator.attrgetter('name')))
    return tree.encode()


def parse_tree(payload: bytes) -> list[TreeEntry]:
    entries = []
    for line in payload.decode().splitlines():
        try:
            mode, kind, oid, name = line.split(' ', 3)
        except ValueError:
            raise Corrupt(f'malformed tree entry {line!r}') from None
        if types.KIND_BY_MODE.get(mode) != kind:
            raise Corrupt(f'unknown tree entry {mode} {kind}')
        entries.append(TreeEntry(name, mode, oid, kind))
    return entries


def serialize_commit(commit: Commit) -> bytes:
    commit_ = f'tree {commit.tree}\n'
    for parent in commit.parents:
        commit_ += f'parent {parent}\n'
    commit_ += f'author {format_signature(commit.author)}\n'
    commit_ += f'committer {format_signature(commit.committer)}\n'
    commit_ += '\n'
    commit_ += commit.message
    return commit_.encode()


def _parse_headers(payload: bytes):
    lines = iter(payload.decode().split('\n'))
    headers = []
    # the header block ends at the first empty line, the rest is the message
    for line in itertools.takewhile(operator.truth, lines):
        try:
            key, value = line.split(' ', 1)
        except ValueError:
            raise Corrupt(f'malformed header line {line!r}') from None
        headers.append((key, value))
    message = '\n'.join(lines)
    return headers, message


def parse_commit(payload: bytes) -> Commit:
    tree = author = committer = None
    parents = []
    headers, message = _parse_headers(payload)
    for key, value in headers:
        if key == 'tree':
            tree = value
        elif key == 'parent':
            parents.append(value)
        elif key == 'author':
            author = parse_signature(value)
        elif key == 'committer':
            committer = parse_signature(value)
        else:
            raise Corrupt(f'unknown commit field {key}')

    if tree is None or author is None or committer is None:
        raise Corrupt('commit is missing tree, author or committer')
    return Commit(tree=tree, parents=parents, author=author, committer=committer, message=message)


def serialize_tag(tag: Tag) -> bytes:
    tag_ = (f'object {tag.object}\n'
            f'type {tag.type_}\n'
            f'tag {tag.name}\n'
            f'tagger {format_signature(tag.tagger)}\n'
            '\n')
    tag_ += tag.message
    return tag_.encode()


def parse_tag(payload: bytes) -> Tag:
    fields = {}
    headers, message = _parse_headers(payload)
    for key, value in headers:
        if key not in ('object', 'type', 'tag', 'tagger'):
            raise Corrupt(f'unknown tag field {key}')
        fields[key] = value
    if len(fields) != 4:
        raise Corrupt('tag is missing a required field')
    return Tag(object=fields['object'], type_=fields['type'], name=fields['tag'],
               tagger=parse_signature(fields['tagger']), message=message)
