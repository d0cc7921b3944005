import os

import pytest
from helpers_repo import commit_files, exists, read_file, remove_file, write_file

from twig.base import Repository
from twig.errors import AlreadyExists, Conflict, MergeConflict, NotFound, RepositoryNotFound
from twig.types import ResetMode


def test_init_and_open(repo, tmp_path):
    assert repo.current_branch() == 'master'
    assert repo.head() is None
    assert Repository.open(repo.root).git_dir == repo.git_dir

    os.makedirs(os.path.join(repo.root, 'deep', 'er'))
    assert Repository.open(os.path.join(repo.root, 'deep', 'er')).root == repo.root
    with pytest.raises(RepositoryNotFound):
        Repository.open(tmp_path / 'nowhere', search_parents=False)
    with pytest.raises(AlreadyExists):
        Repository.init(repo.root)


def test_first_commit_has_no_parents(repo):
    write_file(repo, 'a.txt', 'a\n')
    repo.add_all()
    oid = repo.commit('first')
    commit = repo.get_commit(oid)
    assert commit.parents == []
    assert commit.message == 'first\n'
    assert commit.author.name == 'Test User'
    assert repo.refs.resolve('refs/heads/master') == oid

    second = commit_files(repo, 'second', {'b.txt': 'b\n'})
    assert repo.get_commit(second).parents == [oid]
    assert [oid_ for oid_, _ in repo.log()] == [second, oid]


def test_commit_on_empty_repository_with_nothing_staged(repo):
    oid = repo.commit('empty')
    assert repo.get_tree(repo.get_commit(oid).tree) == {}


def test_resolve_names(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    second = commit_files(repo, 'second', {'a.txt': '2\n'})
    assert repo.resolve('HEAD') == second
    assert repo.resolve('@') == second
    assert repo.resolve('master') == second
    assert repo.resolve('HEAD~1') == first
    assert repo.resolve('HEAD^') == first
    assert repo.resolve(first[:8]) == first
    with pytest.raises(NotFound):
        repo.resolve('HEAD~5')
    with pytest.raises(NotFound):
        repo.resolve('no-such-thing')
    with pytest.raises(NotFound):
        repo.resolve('config')


def test_branches_move_independently(repo):
    x = commit_files(repo, 'x', {'a.txt': 'a\n'})
    repo.create_branch('b')
    repo.checkout_branch('b')
    assert repo.current_branch() == 'b'

    y = commit_files(repo, 'y', {'a.txt': 'changed on b\n'})
    assert repo.refs.resolve('refs/heads/master') == x
    assert repo.refs.resolve('refs/heads/b') == y
    assert repo.list_branches() == ['b', 'master']

    repo.checkout_branch('master')
    assert read_file(repo, 'a.txt') == 'a\n'
    with pytest.raises(AlreadyExists):
        repo.create_branch('b')
    with pytest.raises(NotFound):
        repo.checkout_branch('nope')


def test_delete_branch(repo):
    commit_files(repo, 'x', {'a.txt': 'a\n'})
    repo.create_branch('done')
    repo.delete_branch('done')
    assert repo.list_branches() == ['master']

    repo.create_branch('wip')
    repo.checkout_branch('wip')
    commit_files(repo, 'unmerged', {'a.txt': 'wip\n'})
    repo.checkout_branch('master')
    with pytest.raises(Conflict):
        repo.delete_branch('wip')
    repo.delete_branch('wip', force=True)
    with pytest.raises(Conflict):
        repo.delete_branch('master')


def test_checkout_refuses_to_lose_local_changes(repo):
    commit_files(repo, 'x', {'a.txt': '1\n', 'b.txt': 'b\n'})
    repo.create_branch('other')
    repo.checkout_branch('other')
    other = commit_files(repo, 'y', {'a.txt': '2\n'})
    repo.checkout_branch('master')

    write_file(repo, 'a.txt', 'local edit\n')
    with pytest.raises(Conflict) as excinfo:
        repo.checkout_branch('other')
    assert excinfo.value.paths == ['a.txt']
    assert repo.current_branch() == 'master'
    assert read_file(repo, 'a.txt') == 'local edit\n'

    repo.checkout_branch('other', force=True)
    assert repo.current_branch() == 'other'
    assert repo.head() == other
    assert read_file(repo, 'a.txt') == '2\n'


def test_checkout_carries_unrelated_local_changes(repo):
    commit_files(repo, 'x', {'a.txt': '1\n', 'b.txt': 'b\n'})
    repo.create_branch('other')
    repo.checkout_branch('other')
    commit_files(repo, 'y', {'a.txt': '2\n'})
    repo.checkout_branch('master')

    write_file(repo, 'b.txt', 'local edit\n')
    repo.checkout_branch('other')
    assert read_file(repo, 'a.txt') == '2\n'
    assert read_file(repo, 'b.txt') == 'local edit\n'
    assert repo.status().unstaged.modified == ['b.txt']


def test_checkout_refuses_to_overwrite_untracked_file(repo):
    commit_files(repo, 'x', {'a.txt': 'a\n'})
    repo.create_branch('other')
    repo.checkout_branch('other')
    commit_files(repo, 'y', {'new.txt': 'tracked\n'})
    repo.checkout_branch('master')
    assert not exists(repo, 'new.txt')

    write_file(repo, 'new.txt', 'untracked\n')
    with pytest.raises(Conflict):
        repo.checkout_branch('other')
    assert read_file(repo, 'new.txt') == 'untracked\n'


def test_checkout_detached(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    commit_files(repo, 'second', {'a.txt': '2\n'})
    repo.checkout(first)
    assert repo.current_branch() is None
    assert repo.head() == first
    assert read_file(repo, 'a.txt') == '1\n'


def test_checkout_removes_deleted_files(repo):
    commit_files(repo, 'x', {'a.txt': 'a\n', 'dir/b.txt': 'b\n'})
    repo.create_branch('other')
    repo.checkout_branch('other')
    remove_file(repo, 'dir/b.txt')
    repo.add_all()
    repo.commit('remove b')

    repo.checkout_branch('master')
    assert read_file(repo, 'dir/b.txt') == 'b\n'


def test_reset_soft(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    second = commit_files(repo, 'second', {'a.txt': '2\n'})
    repo.reset(ResetMode.SOFT, 'HEAD~1')
    assert repo.head() == first
    assert repo.refs.resolve('ORIG_HEAD') == second
    status = repo.status()
    assert status.staged.modified == ['a.txt']
    assert not status.unstaged
    assert read_file(repo, 'a.txt') == '2\n'


def test_reset_mixed(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    commit_files(repo, 'second', {'a.txt': '2\n', 'b.txt': 'b\n'})
    repo.reset(ResetMode.MIXED, first)
    status = repo.status()
    assert not status.staged
    assert status.unstaged.modified == ['a.txt']
    assert status.untracked == ['b.txt']
    assert read_file(repo, 'a.txt') == '2\n'


def test_reset_hard(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    commit_files(repo, 'second', {'a.txt': '2\n', 'b.txt': 'b\n'})
    write_file(repo, 'a.txt', 'dirty\n')
    repo.reset(ResetMode.HARD, first)
    assert repo.head() == first
    assert read_file(repo, 'a.txt') == '1\n'
    assert not exists(repo, 'b.txt')
    status = repo.status()
    assert not status.staged and not status.unstaged and not status.untracked


def test_reset_hard_then_staging_reproduces_the_commit(repo):
    oid = commit_files(repo, 'first', {'a.txt': '1\n', 'dir/b.txt': 'b\n'})
    write_file(repo, 'a.txt', 'scribble\n')
    remove_file(repo, 'dir/b.txt')
    repo.add_all()

    repo.reset_hard()
    repo.add_all()
    assert repo.write_tree() == repo.get_commit(oid).tree


def test_clean(repo):
    write_file(repo, '.twigignore', '*.log\n')
    commit_files(repo, 'first', {'a.txt': 'a\n', 'src/main.txt': 'main\n'})
    write_file(repo, 'junk.txt', 'junk\n')
    write_file(repo, 'src/extra.txt', 'extra\n')
    write_file(repo, 'build/out/x.o', 'obj\n')
    write_file(repo, 'debug.log', 'ignored\n')

    would_remove = repo.clean()
    assert sorted(would_remove) == ['build/', 'junk.txt', 'src/extra.txt']
    assert exists(repo, 'junk.txt')

    assert repo.clean(directories=False) == ['junk.txt', 'src/extra.txt']

    removed = repo.clean(force=True)
    assert sorted(removed) == ['build/', 'junk.txt', 'src/extra.txt']
    assert not exists(repo, 'junk.txt')
    assert not exists(repo, 'build')
    assert exists(repo, 'src/main.txt')
    assert exists(repo, 'debug.log')


def test_clean_removes_empty_directories(repo):
    write_file(repo, '.twigignore', 'cache/\n')
    commit_files(repo, 'first', {'src/main.txt': 'main\n'})
    os.makedirs(os.path.join(repo.root, 'tmp', 'deeper'))
    os.makedirs(os.path.join(repo.root, 'src', 'empty'))
    os.makedirs(os.path.join(repo.root, 'cache'))

    assert sorted(repo.clean()) == ['src/empty/', 'tmp/']
    assert repo.clean(directories=False) == []

    assert sorted(repo.clean(force=True)) == ['src/empty/', 'tmp/']
    assert not exists(repo, 'tmp')
    assert not exists(repo, 'src/empty')
    assert exists(repo, 'src/main.txt')
    assert exists(repo, 'cache')


def test_status(repo):
    commit_files(repo, 'first', {'a.txt': 'a\n', 'b.txt': 'b\n'})
    write_file(repo, 'a.txt', 'staged\n')
    repo.add(os.path.join(repo.root, 'a.txt'))
    write_file(repo, 'b.txt', 'unstaged\n')
    write_file(repo, 'c.txt', 'new\n')
    status = repo.status()
    assert status.branch == 'master'
    assert status.staged.modified == ['a.txt']
    assert status.unstaged.modified == ['b.txt']
    assert status.untracked == ['c.txt']
    assert status.conflicted == []


def test_lightweight_and_annotated_tags(repo):
    first = commit_files(repo, 'first', {'a.txt': '1\n'})
    second = commit_files(repo, 'second', {'a.txt': '2\n'})

    assert repo.tag('v1', target='HEAD~1') == first
    annotated = repo.tag('v2', message='release two')
    assert annotated != second
    tag = repo.get_tag(annotated)
    assert tag.object == second
    assert tag.type_ == 'commit'
    assert tag.name == 'v2'
    assert tag.message == 'release two\n'
    assert repo.resolve_commit('v2') == second
    assert repo.list_tags() == ['v1', 'v2']

    with pytest.raises(AlreadyExists):
        repo.tag('v1')
    assert repo.tag('v1', force=True) == second

    repo.delete_tag('v1')
    assert repo.list_tags() == ['v2']
    with pytest.raises(NotFound):
        repo.delete_tag('v1')
    with pytest.raises(ValueError):
        repo.tag('bad name')


def test_commit_refuses_stale_head(repo):
    commit_files(repo, 'first', {'a.txt': '1\n'})
    head = repo.head()
    other = Repository.open(repo.root)
    commit_files(other, 'from another handle', {'a.txt': '2\n'})
    with pytest.raises(Conflict):
        repo._commit_tree(repo.write_tree(), [head], 'stale')


def test_bare_repository_has_no_worktree(tmp_path):
    bare = Repository.init(tmp_path / 'bare.twig', bare=True)
    assert bare.root is None
    with pytest.raises(NotFound):
        bare.add_all()
    assert Repository.open(tmp_path / 'bare.twig').root is None


def test_context_manager(tmp_path):
    with Repository.init(tmp_path / 'ctx') as repo:
        assert repo.head() is None
