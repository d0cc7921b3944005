import json
import logging
import os
import time
from contextlib import contextmanager
from typing import Iterator

from . import data, objects, types
from .errors import Corrupt, MergeConflict
from .types import Changes, IndexEntry, TreeEntry

logger = logging.getLogger(__name__)

INDEX_VERSION = 1

# a file modified this close to the moment the index was written may have
# changed without its size or mtime changing, so its stat data is not trusted
_RACY_WINDOW_NS = 2_000_000_000


def same_entry(a: IndexEntry | None, b: IndexEntry | None) -> bool:
    if a is None or b is None:
        return a is b
    return a.oid == b.oid and a.mode == b.mode and not a.conflicted and not b.conflicted


def iter_tree_entries(store: data.ObjectStore, oid: types.OID) -> Iterator[TreeEntry]:
    if not oid:
        return
    yield from objects.parse_tree(store.get(oid, 'tree'))


def flatten_tree(store: data.ObjectStore, oid: types.OID, base_path: types.Path = '') -> dict[types.Path, IndexEntry]:
    result = {}
    for entry in iter_tree_entries(store, oid):
        path = base_path + entry.name
        if entry.kind == 'tree':
            result.update(flatten_tree(store, entry.oid, f'{path}/'))
        else:
            result[path] = IndexEntry(entry.oid, entry.mode)
    return result


class Index:
    """The staging area: a flat path -> (object id, mode, stat cache) map.

    The index is loaded from disk for each operation and written back
    wholesale. ``stamp_ns`` records when it was last written so that files
    touched in the same instant are re-hashed instead of trusted.
    """

    def __init__(self, git_dir, store: data.ObjectStore):
        self.path = os.path.join(git_dir, 'index')
        self.store = store
        self.entries: dict[types.Path, IndexEntry] = {}
        self.stamp_ns = 0

    def load(self):
        self.entries = {}
        self.stamp_ns = 0
        if not os.path.isfile(self.path):
            return self
        with open(self.path) as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise Corrupt(f'index file is not valid: {e}') from e
        if raw.get('version') != INDEX_VERSION:
            raise Corrupt(f'unsupported index version {raw.get("version")}')
        self.stamp_ns = raw.get('stamp_ns', 0)
        self.entries = {path: IndexEntry(*fields) for path, fields in raw['entries'].items()}
        return self

    def save(self):
        self.stamp_ns = time.time_ns()
        raw = {
            'version': INDEX_VERSION,
            'stamp_ns': self.stamp_ns,
            'entries': {path: list(entry) for path, entry in sorted(self.entries.items())},
        }
        data.write_atomic(self.path, json.dumps(raw, indent=1).encode())
        logger.debug('wrote index with %d entries', len(self.entries))

    def tree_map(self) -> types.TreeMap:
        return {path: entry.oid for path, entry in self.entries.items()}

    def conflicts(self) -> list[types.Path]:
        return sorted(path for path, entry in self.entries.items() if entry.conflicted)

    def is_stat_clean(self, entry: IndexEntry, st: os.stat_result) -> bool:
        return (entry.size == st.st_size and entry.mtime_ns == st.st_mtime_ns
                and st.st_mtime_ns < self.stamp_ns - _RACY_WINDOW_NS)

    def hash_path(self, worktree, path, write=True) -> IndexEntry:
        """Entry for the current content of ``path``, using the stat cache when it can."""
        st = worktree.lstat(path)
        mode = worktree.mode_of(st)
        entry = self.entries.get(path)
        if entry is not None and entry.mode == mode and not entry.conflicted and self.is_stat_clean(entry, st):
            return entry
        content = worktree.read(path)
        if write:
            oid = self.store.put(content)
        else:
            oid, _ = self.store.hash(content)
        return IndexEntry(oid, mode, st.st_size, st.st_mtime_ns)

    def stage_all(self, worktree) -> Changes:
        changes = Changes([], [], [])
        seen = set()
        for path in worktree.iter_files():
            seen.add(path)
            entry = self.hash_path(worktree, path)
            old = self.entries.get(path)
            if old is None:
                changes.added.append(path)
            elif not same_entry(old, entry):
                changes.modified.append(path)
            self.entries[path] = entry

        for path in sorted(set(self.entries) - seen):
            entry = self.entries[path]
            if entry.mode == types.MODE_SUBMODULE and worktree.isdir(path):
                continue
            del self.entries[path]
            changes.deleted.append(path)

        logger.info('staged %d added, %d modified, %d deleted',
                    len(changes.added), len(changes.modified), len(changes.deleted))
        return changes

    def add(self, worktree, paths) -> Changes:
        changes = Changes([], [], [])
        for name in paths:
            path = worktree.relpath(name)
            if worktree.isdir(path):
                prefix = '' if path == '.' else f'{path}/'
                files = [p for p in worktree.iter_files() if p.startswith(prefix)]
                removed = [p for p in self.entries if p.startswith(prefix) and p not in files]
            elif worktree.exists(path):
                if worktree.is_ignored(path):
                    continue
                files, removed = [path], []
            elif path in self.entries:
                files, removed = [], [path]
            else:
                raise FileNotFoundError(f'pathspec {name!r} did not match any files')

            for file_path in files:
                entry = self.hash_path(worktree, file_path)
                old = self.entries.get(file_path)
                if old is None:
                    changes.added.append(file_path)
                elif not same_entry(old, entry):
                    changes.modified.append(file_path)
                self.entries[file_path] = entry
            for file_path in removed:
                del self.entries[file_path]
                changes.deleted.append(file_path)
        return changes

    def diff_worktree(self, worktree) -> tuple[Changes, list[types.Path]]:
        """Unstaged changes of tracked files, plus untracked files."""
        changes = Changes([], [], [])
        untracked = []
        seen = set()
        for path in worktree.iter_files():
            seen.add(path)
            old = self.entries.get(path)
            if old is None:
                untracked.append(path)
            elif not same_entry(old, self.hash_path(worktree, path, write=False)):
                changes.modified.append(path)
        for path, entry in sorted(self.entries.items()):
            if path in seen:
                continue
            if entry.mode == types.MODE_SUBMODULE and worktree.isdir(path):
                continue
            changes.deleted.append(path)
        return changes, untracked

    def write_tree(self) -> types.OID:
        if conflicts := self.conflicts():
            raise MergeConflict(conflicts)

        index_as_tree = {}
        for path, entry in self.entries.items():
            path = path.split('/')
            dirpath, filename = path[:-1], path[-1]
            current = index_as_tree
            # Find the dict for the directory of this file
            for dirname in dirpath:
                current = current.setdefault(dirname, {})
            current[filename] = entry

        def write_tree_recursive(tree_dict):
            entries = []
            for name, value in tree_dict.items():
                if type(value) is dict:
                    entries.append(TreeEntry(name, types.MODE_TREE, write_tree_recursive(value), 'tree'))
                else:
                    entries.append(TreeEntry(name, value.mode, value.oid, types.KIND_BY_MODE[value.mode]))
            return self.store.put(objects.serialize_tree(entries), 'tree')

        return write_tree_recursive(index_as_tree)

    def read_tree(self, tree_oid: types.OID):
        self.entries = flatten_tree(self.store, tree_oid)


@contextmanager
def get_index(git_dir, store: data.ObjectStore):
    index = Index(git_dir, store).load()
    yield index
    index.save()
