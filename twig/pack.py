"""Pack codec for bulk object transfer.

Layout::

    b'PACK' | version (u32) | object count (u32)
    per object: kind code (u8) | compressed length (u32) | zlib(payload)
    trailer: digest of everything above

Objects are identified by the receiver, which re-hashes every payload, so a
pack never carries object ids.
"""
import hashlib
import logging
import struct
import zlib
from typing import Iterable

from . import types
from .errors import Corrupt

logger = logging.getLogger(__name__)

PACK_MAGIC = b'PACK'
PACK_VERSION = 1

_HEADER = struct.Struct('>4sII')
_ENTRY = struct.Struct('>BI')
_KIND_CODES = {'commit': 1, 'tree': 2, 'blob': 3, 'tag': 4}
_KINDS = {code: kind for kind, code in _KIND_CODES.items()}


def write_pack(objects: Iterable[tuple[types.ObjectType, bytes]], hash_name='sha1') -> bytes:
    body = bytearray()
    count = 0
    for kind, payload in objects:
        compressed = zlib.compress(payload)
        body += _ENTRY.pack(_KIND_CODES[kind], len(compressed))
        body += compressed
        count += 1
    pack = _HEADER.pack(PACK_MAGIC, PACK_VERSION, count) + bytes(body)
    logger.debug('wrote pack with %d objects (%d bytes)', count, len(pack))
    return pack + hashlib.new(hash_name, pack).digest()


def read_pack(pack: bytes, hash_name='sha1') -> list[tuple[types.ObjectType, bytes]]:
    digest_size = hashlib.new(hash_name).digest_size
    if len(pack) < _HEADER.size + digest_size:
        raise Corrupt('pack is truncated')
    content, trailer = pack[:-digest_size], pack[-digest_size:]
    if hashlib.new(hash_name, content).digest() != trailer:
        raise Corrupt('pack checksum mismatch')

    magic, version, count = _HEADER.unpack_from(content)
    if magic != PACK_MAGIC or version != PACK_VERSION:
        raise Corrupt(f'unsupported pack {magic!r} version {version}')

    result = []
    offset = _HEADER.size
    for _ in range(count):
        if offset + _ENTRY.size > len(content):
            raise Corrupt('pack ends in the middle of an entry')
        code, length = _ENTRY.unpack_from(content, offset)
        offset += _ENTRY.size
        if code not in _KINDS or offset + length > len(content):
            raise Corrupt('pack entry is malformed')
        try:
            payload = zlib.decompress(content[offset:offset + length])
        except zlib.error as e:
            raise Corrupt(f'pack entry does not decompress: {e}') from e
        offset += length
        result.append((_KINDS[code], payload))
    if offset != len(content):
        raise Corrupt('pack has trailing garbage')
    return result
