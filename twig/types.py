import enum
from typing import TypeAlias, NamedTuple, Literal

Path: TypeAlias = str  # a path relative to the working tree root, always '/' separated
OID: TypeAlias = str  # hex digest
TreeMap: TypeAlias = dict[Path, OID]
ObjectType: TypeAlias = Literal['blob', 'tree', 'commit', 'tag']
EntryKind: TypeAlias = Literal['blob', 'tree', 'symlink', 'submodule']

MODE_FILE = '100644'
MODE_EXECUTABLE = '100755'
MODE_SYMLINK = '120000'
MODE_TREE = '40000'
MODE_SUBMODULE = '160000'

KIND_BY_MODE: dict[str, EntryKind] = {
    MODE_FILE: 'blob',
    MODE_EXECUTABLE: 'blob',
    MODE_SYMLINK: 'symlink',
    MODE_TREE: 'tree',
    MODE_SUBMODULE: 'submodule',
}


class Signature(NamedTuple):
    name: str
    email: str
    timestamp: int
    offset: str = '+0000'


class TreeEntry(NamedTuple):
    name: str
    mode: str
    oid: OID
    kind: EntryKind


class Commit(NamedTuple):
    tree: OID
    parents: list[OID]
    author: Signature
    committer: Signature
    message: str


class Tag(NamedTuple):
    object: OID
    type_: ObjectType
    name: str
    tagger: Signature
    message: str


class RefValue(NamedTuple):
    symbolic: bool
    value: OID | None


class Ref(NamedTuple):
    name: str
    value: RefValue


class IndexEntry(NamedTuple):
    oid: OID
    mode: str = MODE_FILE
    size: int = -1
    mtime_ns: int = -1
    conflicted: bool = False


class Changes(NamedTuple):
    added: list[Path]
    modified: list[Path]
    deleted: list[Path]

    def __bool__(self):
        return bool(self.added or self.modified or self.deleted)


class Status(NamedTuple):
    branch: str | None
    staged: Changes
    unstaged: Changes
    untracked: list[Path]
    conflicted: list[Path]


class MergeResult(NamedTuple):
    oid: OID | None
    fast_forward: bool
    up_to_date: bool = False


class ResetMode(enum.Enum):
    SOFT = 'soft'
    MIXED = 'mixed'
    HARD = 'hard'
