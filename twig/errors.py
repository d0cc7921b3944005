class TwigError(Exception):
    """Base class for every failure raised by the engine."""


class NotFound(TwigError):
    """A ref, path or object that was asked for does not exist."""


class ObjectMissing(NotFound):
    """An object is referenced but absent from the object store."""

    def __init__(self, oid):
        super().__init__(f'object {oid} is missing from the object store')
        self.oid = oid


class RepositoryNotFound(NotFound):
    pass


class AlreadyExists(TwigError):
    pass


class Conflict(TwigError):
    """A compare-and-swap lost a race, or the working tree would lose changes."""

    def __init__(self, message, paths=()):
        super().__init__(message)
        self.paths = list(paths)


class Rejected(TwigError):
    """The remote refused a ref update (non-fast-forward or stale expectation)."""

    def __init__(self, message, refs=()):
        super().__init__(message)
        self.refs = list(refs)


class MergeConflict(TwigError):
    def __init__(self, paths):
        self.paths = sorted(paths)
        super().__init__('automatic merge failed, fix conflicts in: ' + ', '.join(self.paths))


class Corrupt(TwigError):
    pass


class TransportFailure(TwigError):
    pass
