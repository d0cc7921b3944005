import logging
import os
import shutil
import stat

from . import data, types
from .errors import Conflict
from .ignore import IgnoreRules
from .index import Index, same_entry
from .types import IndexEntry

logger = logging.getLogger(__name__)


class WorkTree:
    """Observes and mutates the files of one working tree."""

    def __init__(self, root, ignore: IgnoreRules | None = None):
        self.root = os.path.abspath(root)
        self.ignore = ignore or IgnoreRules(self.root)

    def abspath(self, path: types.Path):
        return os.path.join(self.root, *path.split('/'))

    def relpath(self, name) -> types.Path:
        name = os.fspath(name)
        if not os.path.isabs(name):
            name = os.path.join(self.root, name)
        path = os.path.relpath(os.path.normpath(name), self.root).replace('\\', '/')
        if path == '..' or path.startswith('../'):
            raise ValueError(f'{name} is outside the working tree')
        return path

    def is_ignored(self, path, is_dir=False):
        return self.ignore.is_ignored(path, is_dir)

    def exists(self, path):
        return os.path.lexists(self.abspath(path))

    def isdir(self, path):
        full = self.abspath(path)
        return os.path.isdir(full) and not os.path.islink(full)

    def lstat(self, path):
        return os.lstat(self.abspath(path))

    @staticmethod
    def mode_of(st) -> str:
        if stat.S_ISLNK(st.st_mode):
            return types.MODE_SYMLINK
        if st.st_mode & 0o111:
            return types.MODE_EXECUTABLE
        return types.MODE_FILE

    def iter_files(self):
        for root, dirnames, filenames in os.walk(self.root):
            rel_root = os.path.relpath(root, self.root).replace('\\', '/')
            prefix = '' if rel_root == '.' else f'{rel_root}/'
            kept = []
            for dirname in sorted(dirnames):
                path = prefix + dirname
                full = os.path.join(root, dirname)
                if os.path.islink(full):
                    # symlinks to directories are tracked as links, never followed
                    filenames.append(dirname)
                    continue
                if self.is_ignored(path, is_dir=True) or os.path.isdir(os.path.join(full, data.GIT_DIR)):
                    continue
                kept.append(dirname)
            dirnames[:] = kept
            for filename in sorted(filenames):
                path = prefix + filename
                full = os.path.join(root, filename)
                if self.is_ignored(path) or not (os.path.islink(full) or os.path.isfile(full)):
                    continue
                yield path

    def iter_empty_dirs(self):
        """Outermost non-ignored directories with no files anywhere below them."""
        occupied = set()
        empty = set()
        for root, dirnames, filenames in os.walk(self.root, topdown=False):
            children = [os.path.join(root, dirname) for dirname in dirnames]
            if filenames or any(os.path.islink(child) or child in occupied for child in children):
                occupied.add(root)
            elif root != self.root:
                empty.add(root)

        for full in sorted(empty):
            if os.path.dirname(full) in empty:
                continue
            path = self.relpath(full)
            if not self.is_ignored(path, is_dir=True):
                yield path

    def read(self, path) -> bytes:
        full = self.abspath(path)
        if os.path.islink(full):
            return os.fsencode(os.readlink(full))
        with open(full, 'rb') as f:
            return f.read()

    def write(self, path, content: bytes, mode=types.MODE_FILE):
        full = self.abspath(path)
        self._make_parents(path)
        if os.path.lexists(full):
            if os.path.isdir(full) and not os.path.islink(full):
                shutil.rmtree(full)
            else:
                os.remove(full)
        if mode == types.MODE_SUBMODULE:
            os.makedirs(full, exist_ok=True)
        elif mode == types.MODE_SYMLINK:
            os.symlink(os.fsdecode(content), full)
        else:
            with open(full, 'wb') as f:
                f.write(content)
            if mode == types.MODE_EXECUTABLE:
                os.chmod(full, os.stat(full).st_mode | 0o111)

    def remove(self, path):
        full = self.abspath(path)
        if os.path.isdir(full) and not os.path.islink(full):
            shutil.rmtree(full)
        elif os.path.lexists(full):
            os.remove(full)
        self._prune_empty_parents(os.path.dirname(full))

    def _make_parents(self, path):
        # a file sitting where a directory has to go is replaced
        parent = self.root
        for part in path.split('/')[:-1]:
            parent = os.path.join(parent, part)
            if os.path.lexists(parent) and not os.path.isdir(parent):
                os.remove(parent)
        os.makedirs(os.path.dirname(self.abspath(path)), exist_ok=True)

    def _prune_empty_parents(self, dirname):
        while dirname != self.root and dirname.startswith(self.root):
            try:
                os.rmdir(dirname)
            except OSError:
                return
            dirname = os.path.dirname(dirname)


def _blocking_file(worktree: WorkTree, path, removals):
    """A path component of ``path`` that exists as a file and is not going away."""
    parts = path.split('/')
    for i in range(1, len(parts)):
        parent = '/'.join(parts[:i])
        if parent not in removals and worktree.exists(parent) and not worktree.isdir(parent):
            return parent
    return None


def checkout_tree(worktree: WorkTree, index: Index, head: dict[types.Path, IndexEntry],
                  target: dict[types.Path, IndexEntry], force=False) -> None:
    """Move the index and the working tree from ``head`` to ``target``.

    Without ``force``, local changes to paths the target does not touch are
    carried over, and any path whose local change would be lost makes the
    whole operation fail with ``Conflict`` before anything is written. With
    ``force`` every tracked path is made to match the target exactly.
    """
    current = index.entries
    dirty, _ = index.diff_worktree(worktree)
    dirty = set(dirty.modified) | set(dirty.deleted)

    new_entries = {}
    writes, removals, conflicts = [], [], []
    for path in sorted(set(current) | set(target)):
        cur, tgt, base = current.get(path), target.get(path), head.get(path)
        if force:
            if tgt is None:
                removals.append(path)
            else:
                new_entries[path] = tgt
                if path in dirty or not same_entry(cur, tgt):
                    writes.append(path)
            continue

        if same_entry(cur, tgt):
            new_entries[path] = cur
            continue
        if same_entry(tgt, base) and not (cur is not None and cur.conflicted):
            # the target leaves this path alone, keep the staged change
            if cur is not None:
                new_entries[path] = cur
            continue
        if path in dirty or not same_entry(cur, base):
            conflicts.append(path)
            continue
        if tgt is None:
            removals.append(path)
        else:
            new_entries[path] = tgt
            writes.append(path)

    removal_set = set(removals)
    untracked_writes = [] if force else [path for path in writes if path not in current]
    for path in untracked_writes:
        if worktree.isdir(path):
            prefix = f'{path}/'
            if any(p.startswith(prefix) and p not in removal_set for p in worktree.iter_files()):
                conflicts.append(path)
        elif worktree.exists(path):
            content = worktree.read(path)
            if index.store.hash(content)[0] != target[path].oid:
                conflicts.append(path)
        elif blocker := _blocking_file(worktree, path, removal_set):
            conflicts.append(blocker)

    if conflicts:
        raise Conflict('local changes would be overwritten by checkout: ' + ', '.join(sorted(set(conflicts))),
                       sorted(set(conflicts)))

    for path in removals:
        worktree.remove(path)
    for path in writes:
        entry = new_entries[path]
        content = b'' if entry.mode == types.MODE_SUBMODULE else index.store.get(entry.oid)
        worktree.write(path, content, entry.mode)
        if entry.mode != types.MODE_SUBMODULE:
            st = worktree.lstat(path)
            new_entries[path] = entry._replace(size=st.st_size, mtime_ns=st.st_mtime_ns)

    index.entries = new_entries
    logger.debug('checkout wrote %d paths and removed %d', len(writes), len(removals))


def find_untracked(worktree: WorkTree, index: Index, directories=True) -> list[str]:
    """Untracked, non-ignored paths; a directory with nothing tracked inside is reported as ``dir/``."""
    tracked_dirs = set()
    for path in index.entries:
        parts = path.split('/')
        tracked_dirs.update('/'.join(parts[:i]) for i in range(1, len(parts)))

    result = []
    for path in worktree.iter_files():
        if path in index.entries:
            continue
        if directories:
            parts = path.split('/')
            # report the outermost directory holding no tracked files at all
            for i in range(1, len(parts)):
                parent = '/'.join(parts[:i])
                if parent not in tracked_dirs:
                    path = f'{parent}/'
                    break
        elif '/' in path and path.rsplit('/', 1)[0] not in tracked_dirs:
            continue
        if path not in result:
            result.append(path)

    if directories:
        for path in worktree.iter_empty_dirs():
            # submodules check out as empty directories
            if path not in index.entries and not any(path.startswith(f'{d}/') for d in index.entries):
                result.append(f'{path}/')
    return result


def clean(worktree: WorkTree, index: Index, force=False, directories=True) -> list[str]:
    candidates = find_untracked(worktree, index, directories)
    if not force:
        logger.info('clean dry run, %d paths would be removed', len(candidates))
        return candidates
    for path in candidates:
        worktree.remove(path.rstrip('/'))
        logger.debug('removed %s', path)
    logger.info('clean removed %d paths', len(candidates))
    return candidates
