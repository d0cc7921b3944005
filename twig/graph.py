from collections import deque
from typing import Iterable, Iterator

from . import data, objects, types
from .errors import Corrupt
from .index import iter_tree_entries


def get_commit(store: data.ObjectStore, oid: types.OID) -> types.Commit:
    return objects.parse_commit(store.get(oid, 'commit'))


def get_tag(store: data.ObjectStore, oid: types.OID) -> types.Tag:
    return objects.parse_tag(store.get(oid, 'tag'))


def peel(store: data.ObjectStore, oid: types.OID) -> types.OID:
    """Follow annotated tags until reaching a non-tag object."""
    seen = set()
    while True:
        kind, payload = store.read(oid)
        if kind != 'tag':
            return oid
        if oid in seen:
            raise Corrupt(f'tag cycle at {oid}')
        seen.add(oid)
        oid = objects.parse_tag(payload).object


def iter_commits_and_parents(store: data.ObjectStore, oids: Iterable[types.OID],
                             stop: set[types.OID] = frozenset()) -> Iterator[types.OID]:
    oids = deque(oids)
    visited = set()

    while oids:
        oid = oids.popleft()
        if not oid or oid in visited or oid in stop:
            continue
        visited.add(oid)
        yield oid

        commit_ = get_commit(store, oid)
        # first parent first, so history reads along the mainline
        oids.extendleft(commit_.parents[:1])
        oids.extend(commit_.parents[1:])


def is_ancestor(store: data.ObjectStore, commit_: types.OID, maybe_ancestor: types.OID) -> bool:
    return maybe_ancestor in iter_commits_and_parents(store, {commit_})


def get_merge_base(store: data.ObjectStore, oid1: types.OID, oid2: types.OID) -> types.OID | None:
    """Nearest common ancestor, found by a breadth-first walk of both histories.

    Returns ``None`` for unrelated histories.
    """
    parents1 = set(iter_commits_and_parents(store, {oid1}))

    queue = deque([oid2])
    visited = set()
    while queue:
        oid = queue.popleft()
        if oid in visited:
            continue
        visited.add(oid)
        if oid in parents1:
            return oid
        queue.extend(get_commit(store, oid).parents)
    return None


def _iter_objects_in_tree(store, tree_oid, visited):
    if tree_oid in visited:
        return
    visited.add(tree_oid)
    yield tree_oid
    for entry in iter_tree_entries(store, tree_oid):
        if entry.oid in visited or entry.kind == 'submodule':
            continue
        if entry.kind == 'tree':
            yield from _iter_objects_in_tree(store, entry.oid, visited)
        else:
            visited.add(entry.oid)
            yield entry.oid


def iter_objects_in_commits(store: data.ObjectStore, oids: Iterable[types.OID],
                            haves: Iterable[types.OID] = ()) -> Iterator[types.OID]:
    """Every object reachable from ``oids`` that is not reachable from ``haves``.

    ``oids`` may name commits or annotated tags. The walk stops at commits
    reachable from ``haves``; trees of the commits at that boundary are
    treated as already present on the other side.
    """
    haves = [oid for oid in haves if store.has(oid)]
    have_commits = set()
    for oid in haves:
        peeled = peel(store, oid)
        if store.read(peeled)[0] == 'commit':
            have_commits.update(iter_commits_and_parents(store, {peeled}))

    visited = set()
    for oid in sorted(have_commits):
        for _ in _iter_objects_in_tree(store, get_commit(store, oid).tree, visited):
            pass
    visited.update(have_commits)

    commit_tips = []
    for oid in oids:
        # annotated tags are sent along with whatever they point at
        while oid not in visited:
            kind, payload = store.read(oid)
            if kind == 'tag':
                visited.add(oid)
                yield oid
                oid = objects.parse_tag(payload).object
                continue
            if kind == 'commit':
                commit_tips.append(oid)
            elif kind == 'tree':
                yield from _iter_objects_in_tree(store, oid, visited)
            else:
                visited.add(oid)
                yield oid
            break

    for oid in iter_commits_and_parents(store, commit_tips, stop=have_commits):
        if oid in visited:
            continue
        visited.add(oid)
        yield oid
        yield from _iter_objects_in_tree(store, get_commit(store, oid).tree, visited)


def missing_objects(store: data.ObjectStore, oids: Iterable[types.OID]) -> list[types.OID]:
    """Objects reachable from ``oids`` that are absent, empty when the graph is complete.

    Blobs are checked too, and the walk continues past a gap so every
    absent object is reported.
    """
    missing = []
    pending = deque(oids)
    visited = set()
    while pending:
        oid = pending.popleft()
        if not oid or oid in visited:
            continue
        visited.add(oid)
        if not store.has(oid):
            missing.append(oid)
            continue
        kind, payload = store.read(oid)
        if kind == 'tag':
            pending.append(objects.parse_tag(payload).object)
        elif kind == 'commit':
            commit_ = objects.parse_commit(payload)
            pending.append(commit_.tree)
            pending.extend(commit_.parents)
        elif kind == 'tree':
            pending.extend(entry.oid for entry in objects.parse_tree(payload) if entry.kind != 'submodule')
    return missing
