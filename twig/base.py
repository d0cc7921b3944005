import logging
import os
import re
import shutil
import string
from typing import Iterator

from . import config as config_
from . import data, diff, graph, objects, remote, types
from .credentials import resolve_credentials
from .errors import AlreadyExists, Conflict, MergeConflict, NotFound
from .index import flatten_tree, get_index, Index
from .transport import Transport, get_transport
from .types import Changes, MergeResult, ResetMode, Status
from .worktree import WorkTree, checkout_tree, clean as clean_worktree

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = 'origin'

_REV_SUFFIX = re.compile(r'([~^])(\d*)$')


class Repository:
    """Handle on one repository: its object store, refs, index and working tree.

    Nothing about ref state is cached between calls; every operation reads the
    refs it needs from disk again.
    """

    def __init__(self, git_dir, root=None, credentials=None):
        self.git_dir = git_dir
        self.root = root
        self.config = config_.Config(git_dir)
        self.objects = data.ObjectStore(git_dir, self.config.hash_name)
        self.refs = data.References(git_dir)
        self.credentials = resolve_credentials(credentials)

    def __repr__(self):
        return f'<Repository {self.root or self.git_dir}>'

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # lifecycle

    @classmethod
    def init(cls, path, default_branch=config_.DEFAULT_BRANCH, hash_name='sha1', bare=False, credentials=None):
        path = os.path.abspath(path)
        git_dir = path if bare else os.path.join(path, data.GIT_DIR)
        if os.path.exists(os.path.join(git_dir, 'config')):
            raise AlreadyExists(f'a repository already exists in {git_dir}')
        data.check_ref_name(f'refs/heads/{default_branch}')

        os.makedirs(git_dir, exist_ok=True)
        data.ObjectStore(git_dir, hash_name).init()
        refs = data.References(git_dir)
        refs.init()
        config = config_.Config(git_dir)
        config.set('core', 'hash', hash_name)
        config.set('core', 'default_branch', default_branch)
        config.set('core', 'bare', str(bare).lower())
        config.save()
        refs.set_symbolic('HEAD', f'refs/heads/{default_branch}')
        logger.info('initialized empty repository in %s', git_dir)
        return cls(git_dir, None if bare else path, credentials)

    @classmethod
    def open(cls, path='.', credentials=None, search_parents=True):
        git_dir, root = data.find_git_dir(path, search_parents)
        return cls(git_dir, root, credentials)

    @classmethod
    def clone(cls, uri, path, credentials=None, branch=None, transport: Transport | None = None):
        """Clone ``uri`` into ``path``.

        A ready-made ``transport`` may be passed instead of building one from
        the uri; it is closed once the clone finishes.
        """
        path = os.path.abspath(path)
        created = not os.path.exists(path)
        if not created and os.listdir(path):
            raise AlreadyExists(f'destination {path} already exists and is not empty')

        transport = transport or get_transport(uri, credentials)
        try:
            advertisement = transport.advertise_refs()
            remote_head = advertisement.head if advertisement.head in advertisement.refs else None
            default_branch = os.path.relpath(remote_head, remote.REMOTE_REFS_BASE) if remote_head else config_.DEFAULT_BRANCH
            repo = cls.init(path, default_branch=branch or default_branch,
                            hash_name=advertisement.hash_name, credentials=credentials)
            repo.config.set('remote', 'url', os.fspath(uri), name=DEFAULT_REMOTE)
            repo.config.save()
            repo._fetch(transport, DEFAULT_REMOTE)
            repo._checkout_initial_branch(branch or default_branch)
        except BaseException:
            if created:
                shutil.rmtree(path, ignore_errors=True)
            else:
                shutil.rmtree(os.path.join(path, data.GIT_DIR), ignore_errors=True)
            raise
        finally:
            transport.close()
        logger.info('cloned %s into %s', uri, path)
        return repo

    def _checkout_initial_branch(self, branch):
        tracking = remote.tracking_ref(DEFAULT_REMOTE, f'{remote.REMOTE_REFS_BASE}{branch}')
        oid = self.refs.get(tracking).value
        if oid is None:
            if self.refs.list(f'{remote.LOCAL_REFS_BASE}/{DEFAULT_REMOTE}/'):
                raise NotFound(f'remote branch {branch} not found')
            logger.warning('cloned an empty repository')
            return
        self.refs.create(f'refs/heads/{branch}', oid)
        self._set_upstream(branch, DEFAULT_REMOTE, f'{remote.REMOTE_REFS_BASE}{branch}')
        self.refs.set_symbolic('HEAD', f'refs/heads/{branch}')
        with self._index() as index:
            checkout_tree(self.worktree, index, {}, self._commit_entries(oid), force=True)

    def close(self):
        logger.debug('closed %r', self)

    # plumbing

    @property
    def worktree(self) -> WorkTree:
        if self.root is None:
            raise NotFound('this operation needs a working tree, the repository is bare')
        return WorkTree(self.root)

    def _index(self):
        if self.root is None:
            raise NotFound('a bare repository has no index')
        return get_index(self.git_dir, self.objects)

    def _load_index(self) -> Index:
        return Index(self.git_dir, self.objects).load()

    def get_commit(self, oid: types.OID) -> types.Commit:
        return graph.get_commit(self.objects, oid)

    def get_tag(self, oid: types.OID) -> types.Tag:
        return graph.get_tag(self.objects, oid)

    def get_tree(self, oid: types.OID, base_path: types.Path = '') -> types.TreeMap:
        return {path: entry.oid for path, entry in flatten_tree(self.objects, oid, base_path).items()}

    def _commit_entries(self, oid):
        if oid is None:
            return {}
        return flatten_tree(self.objects, self.get_commit(oid).tree)

    def head(self) -> types.OID | None:
        return self.refs.get('HEAD').value

    def resolve(self, name) -> types.OID:
        if name == '@':
            name = 'HEAD'

        if match := _REV_SUFFIX.search(name):
            op, count = match.groups()
            oid = self.resolve_commit(name[:match.start()])
            count = int(count) if count else 1
            if op == '^':
                if count == 0:
                    return oid
                parents = self.get_commit(oid).parents
                if count > len(parents):
                    raise NotFound(f'{name}: commit has no parent {count}')
                return parents[count - 1]
            for _ in range(count):
                parents = self.get_commit(oid).parents
                if not parents:
                    raise NotFound(f'{name}: history is not that long')
                oid = parents[0]
            return oid

        if name and '..' not in name and not name.startswith('/'):
            refs_to_try = [
                f'refs/{name}',
                f'refs/tags/{name}',
                f'refs/heads/{name}',
                f'refs/remotes/{name}',
            ]
            if name in data.SPECIAL_REFS or name.startswith('refs/'):
                refs_to_try.insert(0, name)
            for ref in refs_to_try:
                if oid := self.refs.get(ref).value:
                    return oid

        is_hex = bool(name) and all(c in string.hexdigits for c in name)
        if is_hex and self.objects.has(name.lower()):
            return name.lower()
        if is_hex and len(name) >= 4:
            matches = [oid for oid in self.objects.iter_oids() if oid.startswith(name.lower())]
            if len(matches) == 1:
                return matches[0]
            if matches:
                raise NotFound(f'short object id {name} is ambiguous')

        raise NotFound(f'Unknown name {name}')

    def resolve_commit(self, name) -> types.OID:
        oid = graph.peel(self.objects, self.resolve(name))
        kind, _ = self.objects.read(oid)
        if kind != 'commit':
            raise NotFound(f'{name} does not name a commit')
        return oid

    def merge_base(self, a, b) -> types.OID | None:
        return graph.get_merge_base(self.objects, self.resolve_commit(a), self.resolve_commit(b))

    def is_ancestor(self, ancestor, descendant) -> bool:
        return graph.is_ancestor(self.objects, self.resolve_commit(descendant), self.resolve_commit(ancestor))

    def log(self, start='HEAD') -> Iterator[tuple[types.OID, types.Commit]]:
        if start == 'HEAD' and self.head() is None:
            return
        for oid in graph.iter_commits_and_parents(self.objects, {self.resolve_commit(start)}):
            yield oid, self.get_commit(oid)

    # branches

    def current_branch(self) -> str | None:
        HEAD = self.refs.get('HEAD', deref=False)
        if not HEAD.symbolic:
            return None
        HEAD = HEAD.value
        assert HEAD.startswith('refs/heads/'), f'expected HEAD to start with "refs/heads/", found {HEAD}'
        return os.path.relpath(HEAD, 'refs/heads')

    def is_branch(self, name) -> bool:
        data.check_ref_name(f'refs/heads/{name}')
        return self.refs.get(f'refs/heads/{name}').value is not None

    def list_branches(self) -> list[str]:
        return [os.path.relpath(ref.name, 'refs/heads') for ref in self.refs.list('refs/heads/')]

    def create_branch(self, name, start='HEAD') -> types.OID:
        ref = f'refs/heads/{name}'
        data.check_ref_name(ref)
        oid = self.resolve_commit(start)
        self.refs.create(ref, oid)
        logger.info('created branch %s at %s', name, oid)
        return oid

    def delete_branch(self, name, force=False) -> None:
        ref = f'refs/heads/{name}'
        data.check_ref_name(ref)
        if name == self.current_branch():
            raise Conflict(f'cannot delete branch {name}, it is checked out')
        oid = self.refs.get(ref).value
        if oid is None:
            raise NotFound(f'branch {name} not found')
        head = self.head()
        if not force and (head is None or not graph.is_ancestor(self.objects, head, oid)):
            raise Conflict(f'branch {name} is not fully merged')
        self.refs.delete(ref, oid)
        logger.info('deleted branch %s (was %s)', name, oid)

    def checkout_branch(self, name, force=False) -> types.OID:
        if not self.is_branch(name):
            tracking = f'{remote.LOCAL_REFS_BASE}/{DEFAULT_REMOTE}/{name}'
            if self.refs.get(tracking).value is None:
                raise NotFound(f'branch {name} not found')
            self.create_branch(name, tracking)
            self._set_upstream(name, DEFAULT_REMOTE, f'{remote.REMOTE_REFS_BASE}{name}')
        return self.checkout(name, force)

    def checkout(self, name, force=False) -> types.OID:
        oid = self.resolve_commit(name)
        head = self.head()
        is_branch = not data.is_oid(name, self.objects.hash_name) and self.is_branch_name(name)
        if not force and self.refs.get('MERGE_HEAD').value:
            raise Conflict('a merge is in progress, commit it or reset before switching')

        with self._index() as index:
            checkout_tree(self.worktree, index, self._commit_entries(head), self._commit_entries(oid), force)

        if force and self.refs.get('MERGE_HEAD').value:
            self.refs.delete('MERGE_HEAD', self.refs.get('MERGE_HEAD').value, deref=False)
        if is_branch:
            self.refs.set_symbolic('HEAD', f'refs/heads/{name}')
        else:
            self.refs.update('HEAD', head, oid, deref=False)
        logger.info('checked out %s (%s)', name, oid)
        return oid

    def is_branch_name(self, name) -> bool:
        try:
            return self.is_branch(name)
        except ValueError:
            return False

    def _set_upstream(self, branch, remote_name, merge_ref):
        self.config.set('branch', 'remote', remote_name, name=branch)
        self.config.set('branch', 'merge', merge_ref, name=branch)
        self.config.save()

    # staging and committing

    def add_all(self) -> Changes:
        with self._index() as index:
            return index.stage_all(self.worktree)

    def add(self, paths) -> Changes:
        if isinstance(paths, (str, os.PathLike)):
            paths = [paths]
        with self._index() as index:
            return index.add(self.worktree, paths)

    def write_tree(self) -> types.OID:
        return self._load_index().write_tree()

    def read_tree(self, tree_oid) -> None:
        with self._index() as index:
            index.read_tree(tree_oid)

    def commit(self, message, author: tuple[str, str] | None = None, timestamp=None) -> types.OID:
        tree = self._load_index().write_tree()
        head = self.head()
        parents = [head] if head else []
        merge_head = self.refs.get('MERGE_HEAD').value
        if merge_head:
            parents.append(merge_head)
        return self._commit_tree(tree, parents, message, author, timestamp)

    def _commit_tree(self, tree, parents, message, author=None, timestamp=None) -> types.OID:
        name, email = author or self.config.identity()
        signature = objects.make_signature(name, email, timestamp)
        if not message.endswith('\n'):
            message += '\n'
        commit_ = types.Commit(tree=tree, parents=parents, author=signature, committer=signature, message=message)
        oid = self.objects.put(objects.serialize_commit(commit_), 'commit')

        # the branch moves last, and only if nobody else moved it meanwhile
        self.refs.update('HEAD', parents[0] if parents else None, oid)
        if len(parents) > 1 and (merge_head := self.refs.get('MERGE_HEAD').value):
            self.refs.delete('MERGE_HEAD', merge_head, deref=False)
        logger.info('committed %s on %s', oid, self.current_branch() or 'detached HEAD')
        return oid

    # reset and clean

    def reset(self, mode: ResetMode = ResetMode.MIXED, target='HEAD') -> types.OID:
        mode = ResetMode(mode)
        head = self.head()
        oid = self.resolve_commit(target)
        merge_head = self.refs.get('MERGE_HEAD').value

        if mode is ResetMode.SOFT:
            if merge_head or self._load_index().conflicts():
                raise Conflict('cannot do a soft reset in the middle of a merge')
        else:
            target_entries = self._commit_entries(oid)
            with self._index() as index:
                if mode is ResetMode.HARD:
                    checkout_tree(self.worktree, index, self._commit_entries(head), target_entries, force=True)
                else:
                    index.entries = target_entries

        if head is not None:
            self.refs.create('ORIG_HEAD', head, force=True)
        if merge_head:
            self.refs.delete('MERGE_HEAD', merge_head, deref=False)
        self.refs.update('HEAD', head, oid)
        logger.info('%s reset to %s', mode.value, oid)
        return oid

    def reset_hard(self) -> types.OID:
        return self.reset(ResetMode.HARD)

    def clean(self, force=False, directories=True) -> list[str]:
        return clean_worktree(self.worktree, self._load_index(), force, directories)

    def status(self) -> Status:
        index = self._load_index()
        unstaged, untracked = index.diff_worktree(self.worktree)
        staged = diff.changes_between(self._commit_entries(self.head()), index.entries)
        return Status(self.current_branch(), staged, unstaged, untracked, index.conflicts())

    # merging

    def merge_branch(self, name) -> MergeResult:
        return self.merge(name)

    def merge(self, name) -> MergeResult:
        other = self.resolve_commit(name)
        head = self.head()
        if self.refs.get('MERGE_HEAD').value:
            raise Conflict('a merge is already in progress, commit or reset first')

        index = self._load_index()
        head_entries = self._commit_entries(head)
        unstaged, _ = index.diff_worktree(self.worktree)
        staged = diff.changes_between(head_entries, index.entries)
        if staged or unstaged:
            dirty = sorted({*staged.added, *staged.modified, *staged.deleted,
                            *unstaged.modified, *unstaged.deleted})
            raise Conflict('local changes would be overwritten by merge: ' + ', '.join(dirty), dirty)

        other_entries = self._commit_entries(other)
        merge_base = graph.get_merge_base(self.objects, other, head) if head else None

        if head == other or merge_base == other:
            logger.info('already up to date with %s', name)
            return MergeResult(head, fast_forward=False, up_to_date=True)

        if head is None or merge_base == head:
            checkout_tree(self.worktree, index, head_entries, other_entries)
            index.save()
            self.refs.update('HEAD', head, other)
            logger.info('fast-forward merge of %s to %s', name, other)
            return MergeResult(other, fast_forward=True)

        base_entries = self._commit_entries(merge_base)
        merged, conflicts = diff.merge_trees(self.objects, base_entries, head_entries, other_entries,
                                             other_label=name)
        checkout_tree(self.worktree, index, head_entries, merged)
        index.save()
        if conflicts:
            self.refs.create('MERGE_HEAD', other, force=True)
            raise MergeConflict(conflicts)

        oid = self._commit_tree(index.write_tree(), [head, other], f"Merge '{name}'")
        return MergeResult(oid, fast_forward=False)

    # tags

    def tag(self, name, message=None, target='HEAD', force=False) -> types.OID:
        ref = f'refs/tags/{name}'
        data.check_ref_name(ref)
        oid = self.resolve(target)
        if message is not None:
            kind, _ = self.objects.read(oid)
            tagger = objects.make_signature(*self.config.identity())
            if not message.endswith('\n'):
                message += '\n'
            tag_ = types.Tag(object=oid, type_=kind, name=name, tagger=tagger, message=message)
            oid = self.objects.put(objects.serialize_tag(tag_), 'tag')
        self.refs.create(ref, oid, force=force)
        logger.info('tagged %s as %s', oid, name)
        return oid

    def list_tags(self) -> list[str]:
        return [os.path.relpath(ref.name, 'refs/tags') for ref in self.refs.list('refs/tags/')]

    def delete_tag(self, name) -> None:
        ref = f'refs/tags/{name}'
        data.check_ref_name(ref)
        oid = self.refs.get(ref, deref=False).value
        if oid is None:
            raise NotFound(f'tag {name} not found')
        self.refs.delete(ref, oid)
        logger.info('deleted tag %s (was %s)', name, oid)

    # remotes

    def add_remote(self, name, url) -> None:
        if self.config.remote_url(name) is not None:
            raise AlreadyExists(f'remote {name} already exists')
        self.config.set('remote', 'url', os.fspath(url), name=name)
        self.config.save()

    def _transport(self, remote_name) -> Transport:
        url = self.config.remote_url(remote_name)
        if url is None:
            raise NotFound(f'remote {remote_name} is not configured')
        return get_transport(url, self.credentials, self.config.http_timeout)

    def _fetch(self, transport, remote_name) -> dict[str, types.OID]:
        return remote.fetch(self.objects, self.refs, transport, remote_name)

    def fetch(self, remote_name=DEFAULT_REMOTE) -> dict[str, types.OID]:
        with self._transport(remote_name) as transport:
            return self._fetch(transport, remote_name)

    def _upstream(self, branch) -> tuple[str, str]:
        return self.config.upstream(branch) or (DEFAULT_REMOTE, f'{remote.REMOTE_REFS_BASE}{branch}')

    def pull(self, remote_name=None) -> MergeResult:
        branch = self.current_branch()
        if branch is None:
            raise NotFound('cannot pull with a detached HEAD')
        upstream_remote, merge_ref = self._upstream(branch)
        remote_name = remote_name or upstream_remote
        self.fetch(remote_name)
        tracking = remote.tracking_ref(remote_name, merge_ref)
        if self.refs.get(tracking).value is None:
            raise NotFound(f'remote {remote_name} has no branch {merge_ref}')
        return self.merge(tracking)

    def push(self, remote_name=None, force=False, set_upstream=False) -> dict[str, types.OID]:
        branch = self.current_branch()
        if branch is None:
            raise NotFound('cannot push with a detached HEAD')
        upstream_remote, merge_ref = self._upstream(branch)
        remote_name = remote_name or upstream_remote
        local_ref = f'refs/heads/{branch}'
        with self._transport(remote_name) as transport:
            moved = remote.push(self.objects, self.refs, transport, [(local_ref, merge_ref)], force)

        for name, oid in moved.items():
            tracking = remote.tracking_ref(remote_name, name)
            self.refs.update(tracking, self.refs.get(tracking).value, oid)
        if set_upstream:
            self._set_upstream(branch, remote_name, merge_ref)
        return moved

    def push_tag(self, name, remote_name=DEFAULT_REMOTE, force=False) -> dict[str, types.OID]:
        ref = f'refs/tags/{name}'
        data.check_ref_name(ref)
        if self.refs.get(ref).value is None:
            raise NotFound(f'tag {name} not found')
        with self._transport(remote_name) as transport:
            return remote.push(self.objects, self.refs, transport, [(ref, ref)], force)
