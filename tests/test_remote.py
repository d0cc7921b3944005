import os

import pytest
from helpers_repo import commit_files, read_file

from twig import graph, pack, remote
from twig.base import Repository
from twig.errors import AlreadyExists, Corrupt, Rejected, TransportFailure
from twig.transport import LocalTransport


@pytest.fixture
def clone(bare_origin, tmp_path):
    return Repository.clone(bare_origin.git_dir, tmp_path / 'clone')


@pytest.fixture
def other_clone(bare_origin, tmp_path):
    return Repository.clone(bare_origin.git_dir, tmp_path / 'other')


def test_pack_round_trip():
    objects = [('blob', b'hello\n'), ('tree', b''), ('commit', b'tree x\n\nmsg\n'), ('tag', b'object y\n')]
    assert pack.read_pack(pack.write_pack(objects)) == objects
    assert pack.read_pack(pack.write_pack([])) == []


def test_tampered_pack_is_refused():
    pack_bytes = bytearray(pack.write_pack([('blob', b'hello\n')]))
    pack_bytes[15] ^= 0xff
    with pytest.raises(Corrupt):
        pack.read_pack(bytes(pack_bytes))
    with pytest.raises(Corrupt):
        pack.read_pack(pack.write_pack([('blob', b'hello\n')])[:-3])
    with pytest.raises(Corrupt):
        pack.read_pack(b'')


def test_clone(clone, bare_origin):
    head = bare_origin.refs.resolve('refs/heads/master')
    assert clone.current_branch() == 'master'
    assert clone.head() == head
    assert clone.refs.resolve('refs/remotes/origin/master') == head
    assert clone.refs.target_name('refs/remotes/origin/HEAD') == 'refs/remotes/origin/master'
    assert read_file(clone, 'README') == 'hello\n'
    assert read_file(clone, 'src/main.txt') == 'main\n'
    assert clone.config.upstream('master') == ('origin', 'refs/heads/master')
    status = clone.status()
    assert not status.staged and not status.unstaged and not status.untracked


def test_clone_into_non_empty_directory(bare_origin, tmp_path):
    (tmp_path / 'busy').mkdir()
    (tmp_path / 'busy' / 'file').write_text('x')
    with pytest.raises(AlreadyExists):
        Repository.clone(bare_origin.git_dir, tmp_path / 'busy')


def test_clone_of_something_that_is_not_a_repository(tmp_path):
    with pytest.raises(TransportFailure):
        Repository.clone(tmp_path / 'nothing-here', tmp_path / 'dest')
    assert not (tmp_path / 'dest').exists()


def test_clone_keeps_the_hash_algorithm(tmp_path):
    origin = Repository.init(tmp_path / 'origin', hash_name='sha256')
    commit_files(origin, 'first', {'a.txt': 'a\n'})
    clone = Repository.clone(f'file://{origin.root}', tmp_path / 'clone')
    assert clone.objects.hash_name == 'sha256'
    assert len(clone.head()) == 64


def test_fetch_only_moves_tracking_refs(clone, other_clone):
    before = clone.head()
    pushed = commit_files(other_clone, 'more', {'README': 'hello again\n'})
    other_clone.push()

    updated = clone.fetch()
    assert updated == {'refs/remotes/origin/master': pushed}
    assert clone.head() == before
    assert clone.objects.has(pushed)
    assert read_file(clone, 'README') == 'hello\n'
    assert clone.fetch() == {}


def test_upload_pack_sends_only_missing_objects(bare_origin, clone):
    old = clone.head()
    new = commit_files(clone, 'one new file', {'NEW': 'new\n'})
    sent = set(graph.iter_objects_in_commits(clone.objects, [new], [old]))
    assert sent == {new, clone.get_commit(new).tree, clone.objects.hash(b'new\n')[0]}


def test_pull_fast_forwards(clone, other_clone):
    pushed = commit_files(other_clone, 'more', {'README': 'hello again\n'})
    other_clone.push()

    result = clone.pull()
    assert result.fast_forward
    assert clone.head() == pushed
    assert read_file(clone, 'README') == 'hello again\n'
    assert clone.pull().up_to_date


def test_pull_merges_diverged_history(clone, other_clone, bare_origin):
    theirs = commit_files(other_clone, 'theirs', {'README': 'theirs\n'})
    other_clone.push()
    ours = commit_files(clone, 'ours', {'src/main.txt': 'ours\n'})

    result = clone.pull()
    assert not result.fast_forward
    assert clone.get_commit(result.oid).parents == [ours, theirs]
    assert read_file(clone, 'README') == 'theirs\n'
    assert read_file(clone, 'src/main.txt') == 'ours\n'

    assert clone.push() == {'refs/heads/master': result.oid}
    assert bare_origin.refs.resolve('refs/heads/master') == result.oid


def test_push_fast_forward(clone, bare_origin):
    pushed = commit_files(clone, 'more', {'README': 'pushed\n'})
    assert clone.push() == {'refs/heads/master': pushed}
    assert bare_origin.refs.resolve('refs/heads/master') == pushed
    assert clone.refs.resolve('refs/remotes/origin/master') == pushed
    assert bare_origin.objects.has(pushed)
    assert clone.push() == {}


def test_push_to_diverged_remote_is_rejected(clone, other_clone, bare_origin):
    theirs = commit_files(other_clone, 'theirs', {'README': 'theirs\n'})
    other_clone.push()
    ours = commit_files(clone, 'ours', {'README': 'ours\n'})

    with pytest.raises(Rejected) as excinfo:
        clone.push()
    assert excinfo.value.refs == ['refs/heads/master']
    assert bare_origin.refs.resolve('refs/heads/master') == theirs

    clone.push(force=True)
    assert bare_origin.refs.resolve('refs/heads/master') == ours


def test_push_new_branch(clone, bare_origin):
    clone.create_branch('topic')
    clone.checkout_branch('topic')
    tip = commit_files(clone, 'topic work', {'topic.txt': 'topic\n'})
    clone.push(set_upstream=True)
    assert bare_origin.refs.resolve('refs/heads/topic') == tip
    assert clone.config.upstream('topic') == ('origin', 'refs/heads/topic')


def test_push_to_checked_out_branch_is_refused(tmp_path):
    origin = Repository.init(tmp_path / 'origin')
    commit_files(origin, 'first', {'a.txt': 'a\n'})
    clone = Repository.clone(origin.root, tmp_path / 'clone')
    commit_files(clone, 'second', {'a.txt': 'b\n'})
    with pytest.raises(Rejected):
        clone.push()
    assert read_file(origin, 'a.txt') == 'a\n'


def test_tags_travel(clone, other_clone, bare_origin):
    tag = clone.tag('v1.0', message='first release')
    assert clone.push_tag('v1.0') == {'refs/tags/v1.0': tag}
    assert bare_origin.refs.resolve('refs/tags/v1.0') == tag

    updated = other_clone.fetch()
    assert updated == {'refs/tags/v1.0': tag}
    assert other_clone.get_tag(tag).message == 'first release\n'
    assert other_clone.resolve_commit('v1.0') == clone.head()


def test_receive_pack_refuses_incomplete_pack(bare_origin, clone):
    new = commit_files(clone, 'more', {'README': 'more\n'})
    commit_only = pack.write_pack([clone.objects.read(new)])
    old = bare_origin.refs.resolve('refs/heads/master')
    with pytest.raises(Corrupt):
        remote.receive_pack(bare_origin.objects, bare_origin.refs,
                            [remote.RefUpdate('refs/heads/master', old, new)], commit_only)
    assert bare_origin.refs.resolve('refs/heads/master') == old


def test_receive_pack_refuses_pack_without_blob(bare_origin, clone):
    old = bare_origin.refs.resolve('refs/heads/master')
    new = commit_files(clone, 'more', {'README': 'only here\n'})
    blob = clone.objects.hash(b'only here\n')[0]
    sent = [oid for oid in graph.iter_objects_in_commits(clone.objects, [new], [old]) if oid != blob]
    pack_bytes = pack.write_pack(clone.objects.read(oid) for oid in sent)

    with pytest.raises(Corrupt, match=blob):
        remote.receive_pack(bare_origin.objects, bare_origin.refs,
                            [remote.RefUpdate('refs/heads/master', old, new)], pack_bytes)
    assert bare_origin.refs.resolve('refs/heads/master') == old
    assert not bare_origin.objects.has(blob)


class BlobDroppingTransport(LocalTransport):

    def __init__(self, path, blob):
        super().__init__(path)
        self.blob = blob

    def upload_pack(self, wants, haves) -> bytes:
        sent = [oid for oid in graph.iter_objects_in_commits(self.store, wants, haves) if oid != self.blob]
        return pack.write_pack(self.store.read(oid) for oid in sent)


def test_fetch_of_pack_without_blob_leaves_tracking_ref(clone, other_clone, bare_origin):
    before = clone.refs.resolve('refs/remotes/origin/master')
    commit_files(other_clone, 'more', {'README': 'only pushed\n'})
    other_clone.push()
    blob = other_clone.objects.hash(b'only pushed\n')[0]

    with BlobDroppingTransport(bare_origin.git_dir, blob) as transport:
        with pytest.raises(Corrupt, match=blob):
            remote.fetch(clone.objects, clone.refs, transport, 'origin')
    assert clone.refs.resolve('refs/remotes/origin/master') == before


def test_missing_objects_reports_every_gap(repo):
    commit_files(repo, 'two files', {'a.txt': 'a\n', 'b.txt': 'b\n'})
    head = repo.head()
    assert graph.missing_objects(repo.objects, [head]) == []

    blobs = sorted(repo.objects.hash(content)[0] for content in (b'a\n', b'b\n'))
    for oid in blobs:
        os.remove(repo.objects._path(oid))
    assert sorted(graph.missing_objects(repo.objects, [head])) == blobs


def test_receive_pack_reports_stale_expectations(bare_origin, clone):
    new = commit_files(clone, 'more', {'README': 'more\n'})
    objects = graph.iter_objects_in_commits(clone.objects, [new])
    pack_bytes = pack.write_pack(clone.objects.read(oid) for oid in objects)
    statuses = remote.receive_pack(bare_origin.objects, bare_origin.refs, [
        remote.RefUpdate('refs/heads/master', '0' * 40, new),
        remote.RefUpdate('refs/heads/fresh', None, new),
        remote.RefUpdate('bad', None, new),
    ], pack_bytes, force=True)
    assert statuses == {
        'refs/heads/master': 'stale info',
        'refs/heads/fresh': 'ok',
        'bad': 'invalid ref name',
    }


def test_fetch_refuses_other_hash_algorithm(clone, tmp_path):
    other = Repository.init(tmp_path / 'sha256', hash_name='sha256')
    commit_files(other, 'first', {'a.txt': 'a\n'})
    clone.add_remote('wide', other.root)
    with pytest.raises(TransportFailure):
        clone.fetch('wide')
    with pytest.raises(AlreadyExists):
        clone.add_remote('wide', other.root)
