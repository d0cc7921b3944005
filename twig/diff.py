from collections import defaultdict
from typing import Iterable, TypeAlias, Literal

from merge3 import Merge3
from typing_extensions import Unpack

from . import data
from . import types
from .index import same_entry
from .types import IndexEntry

EntryMap: TypeAlias = dict[types.Path, IndexEntry]


def compare_trees(*trees: Unpack[tuple[EntryMap, ...]]) -> Iterable[tuple[types.Path, Unpack[tuple[IndexEntry | None, ...]]]]:
    entries = defaultdict(lambda: [None] * len(trees))
    for i, tree in enumerate(trees):
        for path, entry in tree.items():
            entries[path][i] = entry

    for path in sorted(entries):
        yield path, *entries[path]


Action: TypeAlias = Literal['new_file', 'deleted', 'modified']


def iter_changed_files(t_from: EntryMap, t_to: EntryMap) -> Iterable[tuple[types.Path, Action]]:
    for path, o_from, o_to in compare_trees(t_from, t_to):
        if not same_entry(o_from, o_to):
            action = ('new_file' if not o_from else
                      'deleted' if not o_to else
                      'modified')
            yield path, action


def changes_between(t_from: EntryMap, t_to: EntryMap) -> types.Changes:
    changes = types.Changes([], [], [])
    for path, action in iter_changed_files(t_from, t_to):
        {'new_file': changes.added, 'deleted': changes.deleted, 'modified': changes.modified}[action].append(path)
    return changes


def merge_trees(store: data.ObjectStore, t_base: EntryMap, t_head: EntryMap, t_other: EntryMap,
                other_label='MERGE_HEAD') -> tuple[EntryMap, list[types.Path]]:
    """Three-way merge of flattened trees.

    Returns the merged entries and the paths that could not be merged
    automatically. Conflicted paths are present in the result with
    ``conflicted=True``; text files then hold conflict markers.
    """
    tree = {}
    conflicts = []
    for path, o_base, o_head, o_other in compare_trees(t_base, t_head, t_other):
        if same_entry(o_head, o_other) or same_entry(o_base, o_other):
            merged = o_head
        elif same_entry(o_base, o_head):
            merged = o_other
        else:
            merged, clean = _merge_entry(store, o_base, o_head, o_other, other_label)
            if not clean:
                conflicts.append(path)
        if merged is not None:
            tree[path] = IndexEntry(merged.oid, merged.mode, conflicted=merged.conflicted)
    return tree, conflicts


def _merge_entry(store, o_base, o_head, o_other, other_label) -> tuple[IndexEntry, bool]:
    if o_head is None or o_other is None:
        # modified on one side, deleted on the other
        survivor = o_head or o_other
        return survivor._replace(conflicted=True), False

    if o_head.oid == o_other.oid:
        # same content, only the mode differs
        mode = o_other.mode if o_base is not None and o_base.mode == o_head.mode else o_head.mode
        return IndexEntry(o_head.oid, mode), True

    mergeable = {types.MODE_FILE, types.MODE_EXECUTABLE}
    if o_head.mode not in mergeable or o_other.mode not in mergeable:
        return o_head._replace(conflicted=True), False

    base = store.get(o_base.oid) if o_base is not None and o_base.mode in mergeable else b''
    head = store.get(o_head.oid)
    other = store.get(o_other.oid)
    if b'\x00' in base or b'\x00' in head or b'\x00' in other:
        return o_head._replace(conflicted=True), False

    merged, clean = merge_blobs(base, head, other, other_label=other_label)
    mode = o_other.mode if o_base is not None and o_base.mode == o_head.mode else o_head.mode
    return IndexEntry(store.put(merged), mode, conflicted=not clean), clean


def _terminated(lines):
    if lines and not lines[-1].endswith(b'\n'):
        return lines[:-1] + [lines[-1] + b'\n']
    return lines


def merge_blobs(base: bytes, head: bytes, other: bytes,
                head_label='HEAD', other_label='MERGE_HEAD') -> tuple[bytes, bool]:
    merger = Merge3(base.splitlines(keepends=True),
                    head.splitlines(keepends=True),
                    other.splitlines(keepends=True))
    output = []
    clean = True
    for group in merger.merge_groups():
        what = group[0]
        if what == 'conflict':
            clean = False
            _, _, head_lines, other_lines = group
            output.append(f'<<<<<<< {head_label}\n'.encode())
            output.extend(_terminated(list(head_lines)))
            output.append(b'=======\n')
            output.extend(_terminated(list(other_lines)))
            output.append(f'>>>>>>> {other_label}\n'.encode())
        else:
            output.extend(group[1])
    return b''.join(output), clean
