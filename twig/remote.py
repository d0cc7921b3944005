import logging
import os
from typing import NamedTuple

from . import data, graph, pack, types
from .errors import Conflict, Corrupt, NotFound, Rejected, TransportFailure

logger = logging.getLogger(__name__)

REMOTE_REFS_BASE = 'refs/heads/'
TAGS_BASE = 'refs/tags/'
LOCAL_REFS_BASE = 'refs/remotes'


class Advertisement(NamedTuple):
    refs: dict[str, types.OID]
    head: str | None
    hash_name: str


class RefUpdate(NamedTuple):
    name: str
    old: types.OID | None
    new: types.OID


def tracking_ref(remote: str, branch_ref: str) -> str:
    return f'{LOCAL_REFS_BASE}/{remote}/{os.path.relpath(branch_ref, REMOTE_REFS_BASE)}'


# serving side


def advertise(store: data.ObjectStore, refs: data.References) -> Advertisement:
    advertised = {name: ref.value for name, ref in refs.iter_refs('refs/')
                  if name.startswith((REMOTE_REFS_BASE, TAGS_BASE))}
    head = refs.get('HEAD', deref=False)
    return Advertisement(advertised, head.value if head.symbolic else None, store.hash_name)


def upload_pack(store: data.ObjectStore, wants, haves) -> bytes:
    for oid in wants:
        if not store.has(oid):
            raise NotFound(f'want {oid} is not available')
    objects = list(graph.iter_objects_in_commits(store, wants, haves))
    logger.info('sending %d objects for %d wants', len(objects), len(wants))
    return pack.write_pack((store.read(oid) for oid in objects), store.hash_name)


def store_pack(store: data.ObjectStore, pack_bytes: bytes) -> list[types.OID]:
    received = pack.read_pack(pack_bytes, store.hash_name)
    return [store.put(payload, kind) for kind, payload in received]


def verify_connected(store: data.ObjectStore, tips) -> None:
    if missing := graph.missing_objects(store, tips):
        raise Corrupt(f'received pack is incomplete, missing {", ".join(missing)}')


def _is_fast_forward(store, old, new) -> bool:
    try:
        old_kind = store.read(old)[0]
        new_kind = store.read(new)[0]
    except NotFound:
        return False
    return old_kind == new_kind == 'commit' and graph.is_ancestor(store, new, old)


def receive_pack(store: data.ObjectStore, refs: data.References, commands: list[RefUpdate],
                 pack_bytes: bytes, force=False, checked_out=None) -> dict[str, str]:
    """Store a pushed pack, then apply each ref update independently.

    Returns ``'ok'`` or the reason for refusal per ref.
    """
    store_pack(store, pack_bytes)
    verify_connected(store, [command.new for command in commands])

    statuses = {}
    for name, old, new in commands:
        try:
            data.check_ref_name(name)
        except ValueError:
            statuses[name] = 'invalid ref name'
            continue
        if name == checked_out:
            statuses[name] = 'refusing to update checked out branch'
            continue
        if not force and old is not None and not _is_fast_forward(store, old, new):
            statuses[name] = 'non-fast-forward'
            continue
        try:
            refs.update(name, old, new)
        except Conflict:
            statuses[name] = 'stale info'
            continue
        statuses[name] = 'ok'
        logger.info('updated %s to %s', name, new)
    return statuses


# requesting side


def fetch(store: data.ObjectStore, refs: data.References, transport, remote_name) -> dict[str, types.OID]:
    advertisement = transport.advertise_refs()
    if advertisement.hash_name != store.hash_name:
        raise TransportFailure(f'remote uses {advertisement.hash_name}, local repository uses {store.hash_name}')

    wanted_refs = {}
    for name, oid in advertisement.refs.items():
        if name.startswith(REMOTE_REFS_BASE):
            wanted_refs[tracking_ref(remote_name, name)] = oid
        elif name.startswith(TAGS_BASE) and refs.get(name).value is None:
            wanted_refs[name] = oid

    wants = sorted({oid for oid in wanted_refs.values() if not store.has(oid)})
    if wants:
        haves = sorted({ref.value.value for ref in refs.list('refs/')})
        received = store_pack(store, transport.upload_pack(wants, haves))
        logger.info('received %d objects from %s', len(received), remote_name)
    # refs only move once everything they point at is stored
    verify_connected(store, sorted(set(wanted_refs.values())))

    updated = {}
    for name, oid in sorted(wanted_refs.items()):
        expected = refs.get(name).value
        if expected == oid:
            continue
        refs.update(name, expected, oid)
        updated[name] = oid
        logger.info('%s -> %s', name, oid)

    if advertisement.head and advertisement.head.startswith(REMOTE_REFS_BASE):
        remote_head = tracking_ref(remote_name, advertisement.head)
        if refs.get(remote_head).value is not None:
            refs.set_symbolic(f'{LOCAL_REFS_BASE}/{remote_name}/HEAD', remote_head)
    return updated


def push(store: data.ObjectStore, refs: data.References, transport, updates: list[tuple[str, str]],
         force=False) -> dict[str, types.OID]:
    """Push ``(local ref, remote ref)`` pairs, returning the remote refs that moved."""
    advertisement = transport.advertise_refs()
    if advertisement.hash_name != store.hash_name:
        raise TransportFailure(f'remote uses {advertisement.hash_name}, local repository uses {store.hash_name}')

    commands = []
    for local_name, remote_name in updates:
        new = refs.resolve(local_name)
        old = advertisement.refs.get(remote_name)
        if old == new:
            logger.info('%s is up to date', remote_name)
            continue
        if old is not None and not force and not _is_fast_forward(store, old, new):
            raise Rejected(f'updates to {remote_name} were rejected (non-fast-forward), fetch first', [remote_name])
        commands.append(RefUpdate(remote_name, old, new))

    if not commands:
        return {}

    haves = [oid for oid in advertisement.refs.values() if store.has(oid)]
    objects = list(graph.iter_objects_in_commits(store, [command.new for command in commands], haves))
    logger.info('pushing %d objects for %d refs', len(objects), len(commands))
    pack_bytes = pack.write_pack((store.read(oid) for oid in objects), store.hash_name)
    statuses = transport.receive_pack(commands, pack_bytes, force)

    failed = {name: status for name, status in statuses.items() if status != 'ok'}
    missing = [command.name for command in commands if command.name not in statuses]
    if failed or missing:
        reasons = ', '.join(f'{name} ({status})' for name, status in sorted(failed.items()))
        if missing:
            reasons = ', '.join(filter(None, [reasons, *(f'{name} (no status)' for name in missing)]))
        raise Rejected(f'remote rejected {reasons}', sorted([*failed, *missing]))
    return {command.name: command.new for command in commands}
