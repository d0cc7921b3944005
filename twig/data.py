import hashlib
import logging
import os
import re
import string
import tempfile
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from . import types
from .errors import AlreadyExists, Conflict, Corrupt, NotFound, ObjectMissing, RepositoryNotFound
from .types import Ref, RefValue

logger = logging.getLogger(__name__)

GIT_DIR = '.twig'
HASH_LENGTHS = {'sha1': 40, 'sha256': 64}
SPECIAL_REFS = ('HEAD', 'MERGE_HEAD', 'ORIG_HEAD')

_MAX_SYMREF_DEPTH = 5
_BAD_REF_CHARS = re.compile(r'[\x00-\x20\x7f~^:?*\[\\]')


def write_atomic(path, data: bytes):
    dirname = os.path.dirname(path)
    os.makedirs(dirname, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dirname, prefix='.tmp-')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


def is_bare_git_dir(path) -> bool:
    return (os.path.isfile(os.path.join(path, 'config'))
            and os.path.isdir(os.path.join(path, 'objects'))
            and os.path.isdir(os.path.join(path, 'refs')))


def find_git_dir(path, search_parents=False) -> tuple[str, str | None]:
    """Locate the metadata directory for ``path``.

    Returns ``(git_dir, worktree_root)``; the root is ``None`` for a bare
    repository.
    """
    path = os.path.abspath(path)
    while True:
        candidate = os.path.join(path, GIT_DIR)
        if os.path.isdir(candidate):
            return candidate, path
        if is_bare_git_dir(path):
            return path, None
        parent = os.path.dirname(path)
        if not search_parents or parent == path:
            raise RepositoryNotFound(f'not a twig repository: {path}')
        path = parent


def is_oid(value, hash_name='sha1') -> bool:
    return (isinstance(value, str) and len(value) == HASH_LENGTHS[hash_name]
            and all(c in string.hexdigits for c in value) and value == value.lower())


class ObjectStore:
    """Content addressed storage of blobs, trees, commits and tags.

    Every object lives in its own file named after the hex digest of
    ``b'<kind> <length>\\0' + payload``. Objects are never rewritten, so
    concurrent writers of the same object are harmless.
    """

    def __init__(self, git_dir, hash_name='sha1'):
        if hash_name not in HASH_LENGTHS:
            raise ValueError(f'unsupported hash algorithm {hash_name!r}')
        self.path = os.path.join(git_dir, 'objects')
        self.hash_name = hash_name

    def init(self):
        os.makedirs(self.path, exist_ok=True)

    def hash(self, data: bytes, type_: types.ObjectType = 'blob') -> tuple[types.OID, bytes]:
        obj = f'{type_} {len(data)}'.encode() + b'\x00' + data
        return hashlib.new(self.hash_name, obj).hexdigest(), obj

    def put(self, data: bytes, type_: types.ObjectType = 'blob') -> types.OID:
        oid, obj = self.hash(data, type_)
        path = self._path(oid)
        if os.path.exists(path):
            return oid
        write_atomic(path, obj)
        logger.debug('stored %s %s (%d bytes)', type_, oid, len(data))
        return oid

    def read(self, oid: types.OID) -> tuple[types.ObjectType, bytes]:
        try:
            with open(self._path(oid), 'rb') as f:
                obj = f.read()
        except FileNotFoundError:
            raise ObjectMissing(oid) from None

        if hashlib.new(self.hash_name, obj).hexdigest() != oid:
            raise Corrupt(f'object {oid} does not match its content hash')
        header, sep, content = obj.partition(b'\x00')
        try:
            type_, length = header.decode().split(' ')
            length = int(length)
        except ValueError:
            raise Corrupt(f'object {oid} has a malformed header') from None
        if not sep or length != len(content):
            raise Corrupt(f'object {oid} expected {length} bytes but got {len(content)}')
        return type_, content

    def get(self, oid: types.OID, expected: types.ObjectType | None = 'blob') -> bytes:
        type_, content = self.read(oid)
        if expected is not None and type_ != expected:
            raise TypeError(f'Expected {expected}, got {type_} for {oid}')
        return content

    def has(self, oid: types.OID) -> bool:
        return is_oid(oid, self.hash_name) and os.path.isfile(self._path(oid))

    def iter_oids(self) -> Iterator[types.OID]:
        for name in sorted(os.listdir(self.path)):
            if is_oid(name, self.hash_name):
                yield name

    def _path(self, oid):
        if not is_oid(oid, self.hash_name):
            raise NotFound(f'{oid!r} is not a valid object id')
        return os.path.join(self.path, oid)


def check_ref_name(name: str) -> None:
    if name in SPECIAL_REFS:
        return
    if (not name.startswith('refs/') or name.endswith(('/', '.lock', '.'))
            or '..' in name or '//' in name or '@{' in name
            or _BAD_REF_CHARS.search(name)
            or any(part.startswith('.') for part in name.split('/'))):
        raise ValueError(f'invalid ref name {name!r}')


class References:
    """Mutable name -> object id bindings kept as one file per ref.

    Every mutation is a compare-and-swap: the caller states the value it last
    saw and the update is refused with ``Conflict`` when another writer got
    there first. Nothing is cached, every read goes to disk.
    """

    def __init__(self, git_dir):
        self.git_dir = git_dir
        self._lock = threading.RLock()

    def init(self):
        os.makedirs(os.path.join(self.git_dir, 'refs', 'heads'), exist_ok=True)
        os.makedirs(os.path.join(self.git_dir, 'refs', 'tags'), exist_ok=True)

    def get(self, ref: str, deref=True) -> RefValue:
        return self._get_ref_internal(ref, deref)[1]

    def resolve(self, ref: str) -> types.OID:
        value = self.get(ref).value
        if value is None:
            raise NotFound(f'ref {ref} does not exist')
        return value

    def target_name(self, ref: str) -> str:
        """Name of the ref that actually holds the id after following symbolic refs."""
        return self._get_ref_internal(ref, deref=True)[0]

    def update(self, ref: str, expected: types.OID | None, new: types.OID, deref=True) -> None:
        if not new:
            raise ValueError('new ref value must not be empty')
        with self._lock:
            name = self._get_ref_internal(ref, deref)[0]
            check_ref_name(name)
            with self._locked(name) as lock_fd:
                current = self._get_ref_internal(name, deref=True)[1].value
                if current != expected:
                    raise Conflict(f'ref {name} is at {current}, expected {expected}')
                os.write(lock_fd, f'{new}\n'.encode())
            logger.debug('updated %s: %s -> %s', name, expected, new)

    def create(self, ref: str, oid: types.OID, force=False) -> None:
        with self._lock:
            current = self.get(ref, deref=False)
            if current.value is not None and not force:
                raise AlreadyExists(f'ref {ref} already exists')
            expected = self.get(ref).value
            self.update(ref, expected, oid, deref=False)

    def set_symbolic(self, ref: str, target: str) -> None:
        check_ref_name(ref)
        check_ref_name(target)
        with self._lock:
            with self._locked(ref) as lock_fd:
                os.write(lock_fd, f'ref: {target}\n'.encode())
            logger.debug('pointed %s at %s', ref, target)

    def delete(self, ref: str, expected: types.OID | None, deref=True) -> None:
        with self._lock:
            name = self._get_ref_internal(ref, deref)[0]
            check_ref_name(name)
            path = self._ref_path(name)
            if not os.path.isfile(path):
                raise NotFound(f'ref {name} does not exist')
            with self._locked(name, replace=False):
                current = self._get_ref_internal(name, deref=True)[1].value
                if current != expected:
                    raise Conflict(f'ref {name} is at {current}, expected {expected}')
                os.remove(path)
            self._prune_empty_dirs(os.path.dirname(path))
            logger.debug('deleted %s (was %s)', name, expected)

    def list(self, prefix='', deref=True) -> list[Ref]:
        return [Ref(name, value) for name, value in self.iter_refs(prefix, deref)]

    def iter_refs(self, prefix='', deref=True) -> Iterable[tuple[str, RefValue]]:
        refs = list(SPECIAL_REFS)
        for root, _, filenames in os.walk(os.path.join(self.git_dir, 'refs')):
            root = os.path.relpath(root, self.git_dir).replace('\\', '/')
            refs.extend(f'{root}/{name}' for name in filenames
                        if not name.endswith('.lock') and not name.startswith('.tmp-'))

        for refname in sorted(refs):
            if not refname.startswith(prefix):
                continue
            ref = self.get(refname, deref=deref)
            if ref.value:
                yield refname, ref

    @contextmanager
    def _locked(self, name, replace=True):
        path = self._ref_path(name)
        lock_path = f'{path}.lock'
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise Conflict(f'ref {name} is locked by another writer') from None
        try:
            yield fd
            os.close(fd)
            fd = None
            if replace:
                os.replace(lock_path, path)
        finally:
            if fd is not None:
                os.close(fd)
            if os.path.exists(lock_path):
                os.remove(lock_path)

    def _ref_path(self, name):
        return os.path.join(self.git_dir, *name.split('/'))

    def _prune_empty_dirs(self, dirname):
        stop = {os.path.join(self.git_dir, 'refs'),
                os.path.join(self.git_dir, 'refs', 'heads'),
                os.path.join(self.git_dir, 'refs', 'tags')}
        while dirname not in stop and dirname.startswith(os.path.join(self.git_dir, 'refs')):
            try:
                os.rmdir(dirname)
            except OSError:
                return
            dirname = os.path.dirname(dirname)

    def _get_ref_internal(self, ref: str, deref: bool, depth=0) -> tuple[str, RefValue]:
        if depth > _MAX_SYMREF_DEPTH:
            raise Corrupt(f'symbolic ref loop at {ref}')
        ref_path = self._ref_path(ref)
        value = None
        if os.path.isfile(ref_path):
            with open(ref_path) as f:
                value = f.read().strip() or None

        symbolic = bool(value) and value.startswith('ref:')
        if symbolic:
            value = value.split(':', 1)[1].strip()
            if deref:
                return self._get_ref_internal(value, deref=True, depth=depth + 1)
        return ref, RefValue(symbolic=symbolic, value=value)
