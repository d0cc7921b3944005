import logging
import os

import pathspec

from . import data

logger = logging.getLogger(__name__)

IGNORE_FILE = '.twigignore'


class IgnoreRules:
    """Decides which working tree paths are invisible to the engine.

    Patterns use gitwildmatch syntax and are read from ``.twigignore`` at the
    root of the working tree. The metadata directory is always ignored.
    """

    def __init__(self, root):
        self.root = root
        lines = []
        ignore_path = os.path.join(root, IGNORE_FILE)
        if os.path.isfile(ignore_path):
            with open(ignore_path) as f:
                lines.extend(f.read().splitlines())
            logger.debug('loaded ignore rules from %s', ignore_path)
        self._spec = pathspec.PathSpec.from_lines('gitwildmatch', lines)

    def is_ignored(self, path, is_dir=False) -> bool:
        path = path.replace('\\', '/')
        if data.GIT_DIR in path.split('/'):
            return True
        if is_dir and not path.endswith('/'):
            path += '/'
        return self._spec.match_file(path)
